"""
WILSY METERING - Integrity Module

Key derivation, per-tenant hash chains and record sealing.
"""

from .keys import SigningKeyring
from .chain import GENESIS_HASH, ChainHead, ChainLink, TenantChainLog
from .sealer import ChainVerification, IntegritySealer, log_audit_sink, merkle_root

__all__ = [
    "SigningKeyring",
    "GENESIS_HASH",
    "ChainHead",
    "ChainLink",
    "TenantChainLog",
    "ChainVerification",
    "IntegritySealer",
    "log_audit_sink",
    "merkle_root",
]
