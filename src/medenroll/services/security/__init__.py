"""
Security Services.

Encryption at rest, PHI masking and the authorization gate.
"""

from medenroll.services.security.authorization import (
    SYSTEM_ACTOR,
    Actor,
    AllowAllGate,
    AuthorizationDecision,
    AuthorizationGate,
    Resource,
    RoleBasedAuthorizationGate,
)
from medenroll.services.security.encryption import (
    EncryptedField,
    EncryptionConfig,
    EncryptionService,
)
from medenroll.services.security.phi_protection import (
    PHICategory,
    PHIField,
    PHIProtectionService,
)

__all__ = [
    "SYSTEM_ACTOR",
    "Actor",
    "AllowAllGate",
    "AuthorizationDecision",
    "AuthorizationGate",
    "EncryptedField",
    "EncryptionConfig",
    "EncryptionService",
    "PHICategory",
    "PHIField",
    "PHIProtectionService",
    "Resource",
    "RoleBasedAuthorizationGate",
]
