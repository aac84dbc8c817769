"""
Provenance Signer - release-time signing of build attestations.

Produces the DSSE-wrapped in-toto statements that ProvenanceVerifier
consumes. This is the signing half of the trust model: the release pipeline
holds the Ed25519 private key offline, the upgrade engine pins the public
key in its configuration.

Security Properties:
- SHA-256 digest of every released file recorded as a statement subject
- Ed25519 signature over the DSSE pre-authentication encoding
- Source repository and tag recorded in the SLSA predicate
"""

import base64
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from nacl.signing import SigningKey

from safe_upgrade.constants import Defaults
from safe_upgrade.integrity.provenance import pae
from safe_upgrade.utils.fileops import atomic_write_bytes, sha256_file

logger = logging.getLogger(__name__)

DEFAULT_BUILDER_ID = "https://github.com/slsa-framework/slsa-github-generator/.github/workflows/generator_generic_slsa3.yml@refs/tags/v1.9.0"


def generate_keypair() -> Tuple[bytes, bytes]:
    """
    Generate a new Ed25519 keypair for signing provenance.

    Returns:
        Tuple of (private_key_bytes, public_key_bytes)
    """
    signing_key = SigningKey.generate()
    logger.info("Generated new provenance signing keypair")
    return (bytes(signing_key), bytes(signing_key.verify_key))


def load_signing_key(key_path: Union[str, Path]) -> SigningKey:
    """Load a signing key file (raw 32 bytes or hex encoded)."""
    with open(key_path, 'rb') as f:
        key_data = f.read()
    if len(key_data.strip()) == 64:
        return SigningKey(bytes.fromhex(key_data.strip().decode()))
    return SigningKey(key_data)


class ProvenanceSigner:
    """
    Provenance Signer - builds and signs release attestations.

    Usage:
        signer = ProvenanceSigner(signing_key_path='release.key', key_id='release-2025')
        subjects = signer.hash_files('dist', ['pinactlite', 'gitleakslite'])
        statement = signer.build_statement(subjects, 'github.com/org/repo', 'v0.7.0')
        envelope = signer.sign_statement(statement)
        signer.write_provenance([envelope], 'multiple.intoto.jsonl')
    """

    def __init__(
        self,
        signing_key: Optional[bytes] = None,
        signing_key_path: Optional[str] = None,
        key_id: str = "release",
        builder_id: str = DEFAULT_BUILDER_ID,
    ):
        if signing_key:
            self._signing_key = SigningKey(signing_key)
        elif signing_key_path:
            self._signing_key = load_signing_key(signing_key_path)
        else:
            raise ValueError("A signing key or signing key path is required")

        self.key_id = key_id
        self.builder_id = builder_id
        self.public_key = bytes(self._signing_key.verify_key).hex()

        logger.info(f"ProvenanceSigner initialized (key_id={key_id})")

    def hash_files(
        self,
        directory: Union[str, Path],
        names: Iterable[str],
    ) -> Dict[str, str]:
        """
        Hash release files.

        Args:
            directory: Directory holding the files
            names: Relative names of the files to attest

        Returns:
            Mapping of subject name to sha256 hex digest
        """
        base_path = Path(directory)
        subjects = {}
        for name in names:
            file_path = base_path / name
            if not file_path.is_file():
                logger.warning(f"Skipping missing release file: {file_path}")
                continue
            subjects[name] = sha256_file(file_path)

        logger.info(f"Hashed {len(subjects)} release files in {directory}")
        return dict(sorted(subjects.items()))

    def build_statement(
        self,
        subjects: Dict[str, str],
        source_uri: str,
        source_ref: Optional[str] = None,
        source_digest: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Build an in-toto statement with a SLSA v0.2 predicate.

        Args:
            subjects: Mapping of name to sha256 digest
            source_uri: Repository the release was built from (github.com/org/repo)
            source_ref: Git ref of the build (e.g. refs/tags/v0.7.0)
            source_digest: Commit sha1 of the build, if known
        """
        uri = f"git+https://{source_uri}"
        if source_ref:
            ref = source_ref if source_ref.startswith('refs/') else f"refs/tags/{source_ref}"
            uri = f"{uri}@{ref}"

        config_source: Dict[str, Any] = {'uri': uri, 'entryPoint': '.github/workflows/release.yml'}
        if source_digest:
            config_source['digest'] = {'sha1': source_digest}

        return {
            '_type': Defaults.INTOTO_STATEMENT_TYPE,
            'predicateType': Defaults.SLSA_PREDICATE_TYPE,
            'subject': [
                {'name': name, 'digest': {'sha256': digest}}
                for name, digest in subjects.items()
            ],
            'predicate': {
                'builder': {'id': self.builder_id},
                'buildType': 'https://github.com/slsa-framework/slsa-github-generator/generic@v1',
                'invocation': {'configSource': config_source},
                'metadata': {
                    'buildFinishedOn': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
                },
                'materials': [{'uri': uri}],
            },
        }

    def sign_statement(
        self,
        statement: Dict[str, Any],
        tlog_index: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Sign a statement as a DSSE envelope.

        Args:
            statement: The in-toto statement
            tlog_index: Transparency log index; when given a Sigstore-style
                bundle is returned instead of a bare envelope

        Returns:
            DSSE envelope (or bundle) mapping
        """
        payload = json.dumps(statement, sort_keys=True, separators=(',', ':')).encode('utf-8')
        signed = self._signing_key.sign(pae(Defaults.DSSE_PAYLOAD_TYPE, payload))

        envelope = {
            'payloadType': Defaults.DSSE_PAYLOAD_TYPE,
            'payload': base64.b64encode(payload).decode('ascii'),
            'signatures': [{
                'keyid': self.key_id,
                'sig': base64.b64encode(bytes(signed.signature)).decode('ascii'),
            }],
        }

        logger.info(f"Signed provenance statement with {len(statement.get('subject', []))} subjects")

        if tlog_index is None:
            return envelope

        return {
            'mediaType': 'application/vnd.dev.sigstore.bundle+json;version=0.2',
            'verificationMaterial': {
                'publicKey': {'hint': self.key_id},
                'tlogEntries': [{'logIndex': str(tlog_index), 'kindVersion': {'kind': 'dsse', 'version': '0.0.1'}}],
            },
            'dsseEnvelope': envelope,
        }

    def write_provenance(
        self,
        envelopes: List[Dict[str, Any]],
        output_path: Union[str, Path],
    ) -> None:
        """Write envelopes as JSON lines (``.intoto.jsonl``)."""
        content = ''.join(json.dumps(e, sort_keys=True) + '\n' for e in envelopes)
        atomic_write_bytes(output_path, content.encode('utf-8'), mode=0o644)
        logger.info(f"Wrote provenance to {output_path}")


__all__ = [
    'DEFAULT_BUILDER_ID',
    'generate_keypair',
    'load_signing_key',
    'ProvenanceSigner',
]
