"""
Provenance Verifier - validates signed build attestations.

A release ships an in-toto statement listing the SHA-256 digest of every
published file, wrapped in a DSSE envelope and signed by the release
builder. Only after the signature validates AND the claimed source
repository matches AND (when requested) the claimed tag matches may any
digest from the statement be used.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                   PROVENANCE VERIFICATION                       │
    ├─────────────────────────────────────────────────────────────────┤
    │                                                                 │
    │  multiple.intoto.jsonl / Sigstore bundle                        │
    │  ┌────────────────────┐                                         │
    │  │ DSSE envelope      │── payload (base64) ──► in-toto statement│
    │  │  signatures[]      │                        subject[]        │
    │  │  tlogEntries[]     │                        builder / source │
    │  └─────────┬──────────┘                                         │
    │            ▼                                                    │
    │  1. Signature  (Ed25519 over PAE, or external slsa-verifier)    │
    │  2. Source URI == expected repository                           │
    │  3. Source ref == expected tag (optional)                       │
    │  4. Artifact digest ∈ subjects (optional)                       │
    │            ▼                                                    │
    │  VerifiedDigestSet  ──►  Hash Registry (trusted digests)        │
    └─────────────────────────────────────────────────────────────────┘

Any failure raises TrustError. Trust failures are never downgraded to
"unknown"; the caller must not use any digest from a rejected statement.
"""

import base64
import binascii
import json
import os
import re
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import VerifyKey

from safe_upgrade.constants import Defaults, Timeouts
from safe_upgrade.errors import TrustError
from safe_upgrade.logging_config import get_logger
from safe_upgrade.utils.fileops import sha256_file

logger = get_logger(__name__)

SHA256_PATTERN = re.compile(r'^[0-9a-f]{64}$')


def pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE pre-authentication encoding - the exact bytes that are signed."""
    type_bytes = payload_type.encode('utf-8')
    return b' '.join([
        b'DSSEv1',
        str(len(type_bytes)).encode('ascii'),
        type_bytes,
        str(len(payload)).encode('ascii'),
        payload,
    ])


def normalize_source_uri(uri: str) -> Tuple[str, Optional[str]]:
    """
    Normalize a source repository URI.

    'git+https://github.com/Org/Repo.git@refs/tags/v1.0.0'
        -> ('github.com/org/repo', 'refs/tags/v1.0.0')

    Returns:
        Tuple of (normalized uri, ref or None)
    """
    value = (uri or '').strip()
    if value.startswith('git+'):
        value = value[4:]
    value = re.sub(r'^[a-z]+://', '', value, flags=re.IGNORECASE)

    ref = None
    if '@' in value:
        value, ref = value.split('@', 1)

    value = value.rstrip('/')
    if value.endswith('.git'):
        value = value[:-4]
    return (value.lower(), ref or None)


def normalize_ref(ref: Optional[str]) -> Optional[str]:
    """'refs/tags/v0.7.0' -> 'v0.7.0'"""
    if not ref:
        return None
    for prefix in ('refs/tags/', 'refs/heads/'):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    """Return a JSON object field, treating absent or empty values as {}."""
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise TrustError(f"Malformed provenance: '{field_name}' must be a JSON object", phase="parse")
    return value


def _list(value: Any, field_name: str) -> List[Any]:
    if not value:
        return []
    if not isinstance(value, list):
        raise TrustError(f"Malformed provenance: '{field_name}' must be a JSON array", phase="parse")
    return value


@dataclass(frozen=True)
class Subject:
    """One (name, sha256) pair attested by a statement."""
    name: str
    sha256: str


@dataclass(frozen=True)
class EnvelopeSignature:
    """A detachable DSSE signature."""
    keyid: str
    sig: bytes


@dataclass
class ProvenanceStatement:
    """A parsed, not yet verified, provenance attestation."""
    subjects: List[Subject]
    builder_id: str
    source_uri: str
    source_ref: Optional[str]
    signatures: List[EnvelopeSignature]
    payload: bytes
    payload_type: str
    tlog_entries: List[Dict[str, Any]] = field(default_factory=list)
    raw_document: Optional[str] = None

    @property
    def signed_bytes(self) -> bytes:
        return pae(self.payload_type, self.payload)

    def subject_digest(self, name: str) -> Optional[str]:
        for subject in self.subjects:
            if subject.name == name:
                return subject.sha256
        return None

    @classmethod
    def from_envelope(
        cls,
        envelope: Mapping[str, Any],
        tlog_entries: Optional[List[Dict[str, Any]]] = None,
        raw_document: Optional[str] = None,
    ) -> 'ProvenanceStatement':
        """
        Create from a DSSE envelope mapping.

        Raises:
            TrustError: If the envelope or embedded statement is malformed
        """
        envelope = _mapping(envelope, 'dsseEnvelope')
        try:
            payload = base64.b64decode(envelope['payload'], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise TrustError(f"Malformed DSSE envelope payload: {e}", phase="parse")

        signatures = []
        for entry in _list(envelope.get('signatures'), 'signatures'):
            if not isinstance(entry, Mapping):
                raise TrustError("Malformed DSSE signature entry: not a JSON object", phase="parse")
            try:
                signatures.append(EnvelopeSignature(
                    keyid=str(entry.get('keyid') or ''),
                    sig=base64.b64decode(entry['sig'], validate=True),
                ))
            except (KeyError, TypeError, binascii.Error) as e:
                raise TrustError(f"Malformed DSSE signature entry: {e}", phase="parse")

        try:
            statement = json.loads(payload.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise TrustError(f"Provenance payload is not valid JSON: {e}", phase="parse")

        return cls._from_statement(
            statement,
            payload=payload,
            payload_type=str(envelope.get('payloadType') or Defaults.DSSE_PAYLOAD_TYPE),
            signatures=signatures,
            tlog_entries=tlog_entries or [],
            raw_document=raw_document,
        )

    @classmethod
    def _from_statement(
        cls,
        statement: Mapping[str, Any],
        payload: bytes,
        payload_type: str,
        signatures: List[EnvelopeSignature],
        tlog_entries: List[Dict[str, Any]],
        raw_document: Optional[str],
    ) -> 'ProvenanceStatement':
        if not isinstance(statement, Mapping):
            raise TrustError("Provenance statement must be a JSON object", phase="parse")

        subjects = []
        for entry in _list(statement.get('subject'), 'subject'):
            entry = _mapping(entry, 'subject')
            name = entry.get('name')
            digest = _mapping(entry.get('digest'), 'subject.digest').get('sha256')
            if name and digest:
                subjects.append(Subject(name=str(name), sha256=str(digest).lower()))

        predicate = _mapping(statement.get('predicate'), 'predicate')
        builder_id, source_uri, source_ref = _extract_build_metadata(predicate)

        return cls(
            subjects=subjects,
            builder_id=builder_id,
            source_uri=source_uri,
            source_ref=source_ref,
            signatures=signatures,
            payload=payload,
            payload_type=payload_type,
            tlog_entries=tlog_entries,
            raw_document=raw_document,
        )


def _extract_build_metadata(predicate: Mapping[str, Any]) -> Tuple[str, str, Optional[str]]:
    """Pull (builder id, source uri, source ref) from SLSA v0.2 or v1 predicates."""
    # SLSA v1
    run_details = _mapping(predicate.get('runDetails'), 'runDetails')
    build_definition = _mapping(predicate.get('buildDefinition'), 'buildDefinition')
    if run_details or build_definition:
        builder_id = _mapping(run_details.get('builder'), 'builder').get('id', '')
        external = _mapping(build_definition.get('externalParameters'), 'externalParameters')
        workflow = _mapping(external.get('workflow'), 'workflow')
        repository = workflow.get('repository', '')
        ref = workflow.get('ref')
        uri, uri_ref = normalize_source_uri(str(repository))
        return (str(builder_id), uri, str(ref) if ref else uri_ref)

    # SLSA v0.2
    builder_id = _mapping(predicate.get('builder'), 'builder').get('id', '')
    invocation = _mapping(predicate.get('invocation'), 'invocation')
    config_source = _mapping(invocation.get('configSource'), 'configSource')
    source = config_source.get('uri', '')
    if not source:
        materials = _list(predicate.get('materials'), 'materials')
        if materials and isinstance(materials[0], Mapping):
            source = materials[0].get('uri', '')
    uri, ref = normalize_source_uri(str(source))
    return (str(builder_id), uri, ref)


def parse_provenance_document(text: str) -> List[ProvenanceStatement]:
    """
    Parse a provenance document.

    Accepts a DSSE envelope, a Sigstore bundle (``dsseEnvelope`` plus
    ``verificationMaterial.tlogEntries``), a bare in-toto statement (which
    will fail signature verification), or JSON-lines of any of these.

    Raises:
        TrustError: If nothing parseable is found
    """
    text = text.strip()
    if not text:
        raise TrustError("Provenance document is empty", phase="parse")

    try:
        documents = [json.loads(text)]
    except ValueError:
        try:
            documents = [json.loads(line) for line in text.splitlines() if line.strip()]
        except ValueError as e:
            raise TrustError(f"Provenance is not valid JSON: {e}", phase="parse")

    statements = []
    for document in documents:
        if not isinstance(document, Mapping):
            raise TrustError("Provenance entry must be a JSON object", phase="parse")

        if 'dsseEnvelope' in document:
            material = _mapping(document.get('verificationMaterial'), 'verificationMaterial')
            statements.append(ProvenanceStatement.from_envelope(
                document['dsseEnvelope'],
                tlog_entries=[_mapping(e, 'tlogEntries') for e in _list(material.get('tlogEntries'), 'tlogEntries')],
                raw_document=text,
            ))
        elif 'payload' in document:
            statements.append(ProvenanceStatement.from_envelope(document, raw_document=text))
        elif 'subject' in document:
            payload = json.dumps(document, sort_keys=True).encode('utf-8')
            statements.append(ProvenanceStatement._from_statement(
                document,
                payload=payload,
                payload_type=Defaults.DSSE_PAYLOAD_TYPE,
                signatures=[],
                tlog_entries=[],
                raw_document=text,
            ))
        else:
            raise TrustError("Unrecognized provenance document format", phase="parse")

    return statements


def load_provenance(path: Union[str, Path]) -> List[ProvenanceStatement]:
    """Parse provenance statements from a file."""
    with open(path, 'r', encoding='utf-8') as f:
        return parse_provenance_document(f.read())


@dataclass
class VerifiedDigestSet:
    """Digests taken from a statement that passed every check."""
    source_uri: str
    source_ref: Optional[str]
    builder_id: str
    digests: Dict[str, str]
    version: Optional[str] = None
    backend: str = ""

    def get(self, name: str) -> Optional[str]:
        return self.digests.get(name)

    def merge(self, other: 'VerifiedDigestSet') -> None:
        for name, digest in other.digests.items():
            existing = self.digests.get(name)
            if existing and existing != digest:
                raise TrustError(
                    f"Conflicting attested digests for {name}",
                    path=name,
                    phase="verify_provenance",
                )
            self.digests[name] = digest


# =============================================================================
# SIGNATURE BACKENDS
# =============================================================================

class SignatureBackend(ABC):
    """Validates a statement's signature against the expected signing identity."""

    name = "abstract"
    requires_artifact = False

    @abstractmethod
    def verify_signature(
        self,
        statement: ProvenanceStatement,
        artifact_path: Optional[str],
        expected_source_uri: str,
        expected_tag: Optional[str],
    ) -> None:
        """Raise TrustError unless the signature is valid."""


class Ed25519Backend(SignatureBackend):
    """
    Verifies DSSE Ed25519 signatures against pinned release keys.

    Usage:
        backend = Ed25519Backend({'release-2025': '3b6a27bc...'})
    """

    name = "ed25519"

    def __init__(
        self,
        trusted_keys: Mapping[str, Union[str, bytes]],
        require_transparency_log: bool = False,
    ):
        self._keys: Dict[str, VerifyKey] = {}
        for key_id, key in trusted_keys.items():
            key_bytes = bytes.fromhex(key) if isinstance(key, str) else key
            self._keys[key_id] = VerifyKey(key_bytes)
        self.require_transparency_log = require_transparency_log

    @property
    def key_ids(self) -> List[str]:
        return sorted(self._keys)

    def verify_signature(
        self,
        statement: ProvenanceStatement,
        artifact_path: Optional[str],
        expected_source_uri: str,
        expected_tag: Optional[str],
    ) -> None:
        if not self._keys:
            raise TrustError("No trusted signing keys configured", phase="verify_signature")

        if not statement.signatures:
            raise TrustError("Provenance statement is not signed", phase="verify_signature")

        if self.require_transparency_log and not _has_tlog_reference(statement):
            raise TrustError(
                "Provenance has no transparency log entry",
                phase="verify_signature",
            )

        signed_bytes = statement.signed_bytes
        for signature in statement.signatures:
            if signature.keyid and signature.keyid in self._keys:
                candidates = [(signature.keyid, self._keys[signature.keyid])]
            else:
                candidates = list(self._keys.items())

            for key_id, verify_key in candidates:
                try:
                    verify_key.verify(signed_bytes, signature.sig)
                except (BadSignatureError, CryptoError, ValueError):
                    continue
                logger.security(f"Provenance signature valid (key={key_id})")
                return

        raise TrustError(
            "Provenance signature does not match any trusted key",
            phase="verify_signature",
        )


def _has_tlog_reference(statement: ProvenanceStatement) -> bool:
    return any(
        isinstance(entry, Mapping)
        and (entry.get('logIndex') is not None or entry.get('log_index') is not None)
        for entry in statement.tlog_entries
    )


class SlsaVerifierBackend(SignatureBackend):
    """
    Delegates signature, certificate identity and transparency log checks to
    the external ``slsa-verifier`` tool.
    """

    name = "slsa-verifier"
    requires_artifact = True

    def __init__(
        self,
        binary: str = Defaults.SLSA_VERIFIER_BINARY,
        timeout: float = Timeouts.VERIFIER_PROCESS,
    ):
        self.binary = binary
        self.timeout = timeout

    def build_command(
        self,
        provenance_path: str,
        artifact_path: str,
        expected_source_uri: str,
        expected_tag: Optional[str],
    ) -> List[str]:
        command = [
            self.binary, 'verify-artifact',
            '--provenance-path', provenance_path,
            '--source-uri', expected_source_uri,
        ]
        if expected_tag:
            command.extend(['--source-tag', expected_tag])
        command.append(artifact_path)
        return command

    def verify_signature(
        self,
        statement: ProvenanceStatement,
        artifact_path: Optional[str],
        expected_source_uri: str,
        expected_tag: Optional[str],
    ) -> None:
        if not artifact_path:
            raise TrustError(
                "slsa-verifier needs an artifact to verify against",
                phase="verify_signature",
            )
        if not statement.raw_document:
            raise TrustError("No provenance document to hand to slsa-verifier",
                             phase="verify_signature")

        fd, provenance_path = tempfile.mkstemp(suffix='.intoto.jsonl')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(statement.raw_document)

            command = self.build_command(provenance_path, artifact_path,
                                         expected_source_uri, expected_tag)
            logger.verbose(f"Running {' '.join(command)}")
            try:
                result = subprocess.run(
                    command,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError:
                raise TrustError(
                    f"{self.binary} not installed - cannot verify provenance",
                    phase="verify_signature",
                    next_step="install slsa-verifier or configure the ed25519 verifier",
                )
            except subprocess.TimeoutExpired:
                raise TrustError(
                    f"{self.binary} timed out after {self.timeout:.0f}s",
                    phase="verify_signature",
                )
        finally:
            os.unlink(provenance_path)

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or '').strip().splitlines()
            raise TrustError(
                f"slsa-verifier rejected provenance: {detail[-1] if detail else 'exit ' + str(result.returncode)}",
                path=artifact_path,
                phase="verify_signature",
            )
        logger.security(f"slsa-verifier accepted provenance for {artifact_path}")


# =============================================================================
# VERIFIER
# =============================================================================

class ProvenanceVerifier:
    """
    Provenance Verifier - turns a statement into a trusted digest set.

    Usage:
        verifier = ProvenanceVerifier(Ed25519Backend(trusted_keys))
        digests = verifier.verify(installer, statement, 'github.com/org/repo', 'v0.7.0')
    """

    def __init__(self, backend: SignatureBackend):
        self.backend = backend

    @property
    def requires_artifact(self) -> bool:
        return self.backend.requires_artifact

    def verify(
        self,
        artifact_path: Optional[Union[str, Path]],
        statement: ProvenanceStatement,
        expected_source_uri: str,
        expected_tag: Optional[str] = None,
    ) -> VerifiedDigestSet:
        """
        Verify a provenance statement.

        Args:
            artifact_path: Artifact whose digest must be attested (optional)
            statement: Parsed statement
            expected_source_uri: Repository the release must come from
            expected_tag: Tag the build must have been made from (optional)

        Returns:
            VerifiedDigestSet of the statement's subjects

        Raises:
            TrustError: On any validation failure
        """
        start_time = time.time()
        artifact = str(artifact_path) if artifact_path else None

        if not statement.subjects:
            raise TrustError("Provenance statement attests no subjects", phase="verify_provenance")

        self.backend.verify_signature(statement, artifact, expected_source_uri, expected_tag)

        expected_uri, _ = normalize_source_uri(expected_source_uri)
        if statement.source_uri != expected_uri:
            raise TrustError(
                f"Provenance source mismatch: expected {expected_uri}, "
                f"got {statement.source_uri or 'nothing'}",
                phase="verify_provenance",
            )

        if expected_tag:
            claimed = normalize_ref(statement.source_ref)
            if claimed != normalize_ref(expected_tag):
                raise TrustError(
                    f"Provenance ref mismatch: expected {expected_tag}, got {claimed or 'nothing'}",
                    phase="verify_provenance",
                )

        for subject in statement.subjects:
            if not SHA256_PATTERN.match(subject.sha256):
                raise TrustError(
                    f"Malformed sha256 digest for subject {subject.name}",
                    path=subject.name,
                    phase="verify_provenance",
                )

        if artifact:
            actual = sha256_file(artifact)
            if actual not in {s.sha256 for s in statement.subjects}:
                raise TrustError(
                    "Artifact digest is not attested by the provenance statement",
                    path=artifact,
                    phase="verify_provenance",
                )

        digests = VerifiedDigestSet(
            source_uri=statement.source_uri,
            source_ref=statement.source_ref,
            builder_id=statement.builder_id,
            digests={s.name: s.sha256 for s in statement.subjects},
            backend=self.backend.name,
        )

        logger.security(
            f"Provenance verified: {len(digests.digests)} subjects from "
            f"{statement.source_uri} ({(time.time() - start_time) * 1000:.1f}ms)"
        )
        return digests

    def verify_document(
        self,
        artifact_path: Optional[Union[str, Path]],
        statements: List[ProvenanceStatement],
        expected_source_uri: str,
        expected_tag: Optional[str] = None,
    ) -> VerifiedDigestSet:
        """
        Verify every statement of a document and merge their digests.

        The artifact only needs to be attested by one of the statements.
        """
        if not statements:
            raise TrustError("Provenance document holds no statements", phase="verify_provenance")

        merged: Optional[VerifiedDigestSet] = None
        artifact_attested = artifact_path is None
        artifact_digest = sha256_file(artifact_path) if artifact_path else None

        for statement in statements:
            attests_artifact = (
                artifact_digest is not None and
                artifact_digest in {s.sha256 for s in statement.subjects}
            )
            verified = self.verify(
                artifact_path if attests_artifact or self.requires_artifact else None,
                statement,
                expected_source_uri,
                expected_tag,
            )
            artifact_attested = artifact_attested or attests_artifact
            if merged is None:
                merged = verified
            else:
                merged.merge(verified)

        if not artifact_attested:
            raise TrustError(
                "Artifact digest is not attested by the provenance document",
                path=str(artifact_path),
                phase="verify_provenance",
            )
        return merged


def create_verifier(
    backend: str,
    trusted_keys: Optional[Mapping[str, str]] = None,
    require_transparency_log: bool = False,
    timeout: float = Timeouts.VERIFIER_PROCESS,
    binary: Optional[str] = None,
) -> ProvenanceVerifier:
    """Build a verifier for the configured backend name."""
    if backend == 'slsa-verifier':
        return ProvenanceVerifier(SlsaVerifierBackend(
            binary=binary or Defaults.SLSA_VERIFIER_BINARY,
            timeout=timeout,
        ))
    if backend == 'ed25519':
        return ProvenanceVerifier(Ed25519Backend(
            trusted_keys or {},
            require_transparency_log=require_transparency_log,
        ))
    raise ValueError(f"Unknown verifier backend: {backend}")


__all__ = [
    'pae',
    'normalize_source_uri',
    'normalize_ref',
    'Subject',
    'EnvelopeSignature',
    'ProvenanceStatement',
    'VerifiedDigestSet',
    'parse_provenance_document',
    'load_provenance',
    'SignatureBackend',
    'Ed25519Backend',
    'SlsaVerifierBackend',
    'ProvenanceVerifier',
    'create_verifier',
]
