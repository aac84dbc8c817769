"""
Integrity Module for Safe Upgrade.

Establishes which digests can be believed and classifies installed files:
- Provenance verification (DSSE / in-toto, Ed25519 or slsa-verifier)
- Hash registry (verified provenance first, embedded table fallback)
- Integrity checking of managed files
- Release-side signing and hash generation
- Opt-in installation of the slsa-verifier tool
"""

from .provenance import (
    Ed25519Backend,
    ProvenanceStatement,
    ProvenanceVerifier,
    SignatureBackend,
    SlsaVerifierBackend,
    VerifiedDigestSet,
    create_verifier,
    load_provenance,
    parse_provenance_document,
)
from .registry import (
    DigestSource,
    HashRegistry,
    TrustLevel,
    VersionedDigest,
    create_registry,
    load_hash_table,
)
from .checker import (
    FileCheck,
    IntegrityChecker,
    IntegrityReport,
    IntegrityVerdict,
)
from .signer import ProvenanceSigner, generate_keypair
from .slsa_install import SlsaVerifierInstaller, ensure_slsa_verifier

__all__ = [
    # Provenance
    'Ed25519Backend',
    'ProvenanceStatement',
    'ProvenanceVerifier',
    'SignatureBackend',
    'SlsaVerifierBackend',
    'VerifiedDigestSet',
    'create_verifier',
    'load_provenance',
    'parse_provenance_document',

    # Registry
    'DigestSource',
    'HashRegistry',
    'TrustLevel',
    'VersionedDigest',
    'create_registry',
    'load_hash_table',

    # Checker
    'FileCheck',
    'IntegrityChecker',
    'IntegrityReport',
    'IntegrityVerdict',

    # Signing
    'ProvenanceSigner',
    'generate_keypair',

    # slsa-verifier
    'SlsaVerifierInstaller',
    'ensure_slsa_verifier',
]
