"""
Hash Registry - resolves the expected digest of a file at a version.

Lookup order for (version, path):
    1. Verified provenance for the version (downloaded and verified once
       per session, the whole digest set is cached)
    2. The embedded table shipped with the tool
    3. DigestNotFoundError

Network failures and missing provenance degrade to the embedded table with
a visible warning. A provenance TrustError blocks that provenance source for
the version for the rest of the session; it is logged as an error and the
embedded table is used if it has an entry.

Embedded entries marked pending (TBD) are identical to no entry.
"""

import logging
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

import yaml

from safe_upgrade.constants import Defaults
from safe_upgrade.errors import ArtifactFetchError, DigestNotFoundError, NetworkError, TrustError
from safe_upgrade.integrity.hashgen import verify_hash_document
from safe_upgrade.integrity.provenance import (
    ProvenanceVerifier,
    VerifiedDigestSet,
    parse_provenance_document,
)
from safe_upgrade.release import ReleaseSource
from safe_upgrade.utils.error_handling import ErrorCategory, ErrorSeverity, handle_error

logger = logging.getLogger(__name__)

EMBEDDED_TABLE_PATH = Path(__file__).resolve().parent.parent / 'data' / 'release_hashes.yaml'


class DigestSource(Enum):
    """Where a digest came from."""
    EMBEDDED = "embedded"
    PROVENANCE = "provenance"


class TrustLevel(Enum):
    """Whether a digest may be used to authorize installing new content."""
    TRUSTED = "trusted"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VersionedDigest:
    """Expected digest of one file at one version."""
    version: str
    path: str
    sha256: str
    source: DigestSource
    trust: TrustLevel = TrustLevel.TRUSTED

    def __post_init__(self):
        if self.source == DigestSource.PROVENANCE and self.trust != TrustLevel.TRUSTED:
            object.__setattr__(self, 'trust', TrustLevel.TRUSTED)

    @property
    def trusted(self) -> bool:
        return self.trust == TrustLevel.TRUSTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'path': self.path,
            'sha256': self.sha256,
            'source': self.source.value,
            'trust': self.trust.value,
        }


def is_pending(value: Optional[str]) -> bool:
    """True for digest entries that were never recorded."""
    if value is None:
        return True
    return str(value).strip().upper() in Defaults.PENDING_MARKERS


def parse_hash_table(data: Any) -> Dict[str, Dict[str, str]]:
    """
    Normalize a parsed hash document into {version: {path: sha256}}.

    Accepts the embedded layout ``{versions: {<version>: {<path>: <sha256>}}}``
    and the single-release layout written by ``generate-hashes``
    (``{version: <version>, hashes: {<path>: <sha256>}}``).
    """
    if not isinstance(data, Mapping):
        raise ValueError("Hash table must be a mapping")

    if 'versions' in data:
        versions = data['versions'] or {}
    elif 'version' in data and 'hashes' in data:
        versions = {str(data['version']): data['hashes'] or {}}
    else:
        raise ValueError("Hash table needs a 'versions' or 'version'/'hashes' section")

    table: Dict[str, Dict[str, str]] = {}
    for version, entries in versions.items():
        version = str(version).lstrip('v')
        table[version] = {
            str(path): '' if digest is None else str(digest).strip().lower()
            for path, digest in (entries or {}).items()
        }
    return table


def load_hash_table(path: Union[str, Path]) -> Dict[str, Dict[str, str]]:
    """Load a YAML or JSON hash document (JSON is valid YAML)."""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    return parse_hash_table(data)


class HashRegistry:
    """
    Hash Registry - explicit, session-scoped digest lookup.

    Usage:
        registry = HashRegistry(load_hash_table(EMBEDDED_TABLE_PATH),
                                release_source=source, verifier=verifier,
                                source_uri='github.com/org/repo')
        digest = registry.expected_digest('0.7.0', '.git/hooks/pre-push')
    """

    def __init__(
        self,
        embedded: Optional[Mapping[str, Mapping[str, str]]] = None,
        release_source: Optional[ReleaseSource] = None,
        verifier: Optional[ProvenanceVerifier] = None,
        source_uri: str = "",
        installer_asset: str = Defaults.INSTALLER_ASSET,
        require_tag: bool = True,
    ):
        self._embedded: Dict[str, Dict[str, Tuple[str, TrustLevel]]] = {}
        self.release_source = release_source
        self.verifier = verifier
        self.source_uri = source_uri
        self.installer_asset = installer_asset
        self.require_tag = require_tag

        self._cache: Dict[Tuple[str, str], Optional[VersionedDigest]] = {}
        self._provenance: Dict[str, Optional[VerifiedDigestSet]] = {}
        self._blocked: Set[str] = set()
        self.notices: List[str] = []

        if embedded:
            self.add_embedded(embedded, TrustLevel.TRUSTED)

    # -------------------------------------------------------------------------
    # Embedded table
    # -------------------------------------------------------------------------

    def add_embedded(
        self,
        table: Mapping[str, Mapping[str, str]],
        trust: TrustLevel = TrustLevel.TRUSTED,
    ) -> None:
        """Add embedded entries. Existing trusted entries are never overridden."""
        for version, entries in table.items():
            bucket = self._embedded.setdefault(str(version).lstrip('v'), {})
            for path, digest in entries.items():
                existing = bucket.get(path)
                if existing and existing[1] == TrustLevel.TRUSTED and not is_pending(existing[0]):
                    continue
                bucket[path] = (digest, trust)
        self._cache.clear()

    @property
    def versions(self) -> List[str]:
        return sorted(self._embedded)

    def _embedded_lookup(self, version: str, candidates: List[str]) -> Optional[Tuple[str, str, TrustLevel]]:
        bucket = self._embedded.get(version, {})
        for name in candidates:
            entry = bucket.get(name)
            if entry is None:
                continue
            if is_pending(entry[0]):
                logger.debug(f"Digest for {name} in {version} is pending")
                continue
            return (name, entry[0], entry[1])
        return None

    # -------------------------------------------------------------------------
    # Provenance
    # -------------------------------------------------------------------------

    def is_blocked(self, version: str) -> bool:
        return version in self._blocked

    def _degrade(self, message: str) -> None:
        logger.warning(message)
        self.notices.append(message)

    def provenance_digests(self, version: str) -> Optional[VerifiedDigestSet]:
        """
        Verified digest set for a version, or None when provenance is
        unavailable or was rejected. Downloads and verifies at most once.
        """
        if version in self._provenance:
            return self._provenance[version]

        result = None
        if self.release_source is None or self.verifier is None:
            logger.debug("No release source or verifier configured, skipping provenance")
        else:
            result = self._fetch_and_verify(version)

        self._provenance[version] = result
        return result

    def _fetch_and_verify(self, version: str) -> Optional[VerifiedDigestSet]:
        try:
            text = self.release_source.fetch_provenance(version)
        except NetworkError as e:
            handle_error(e, "fetch_provenance", ErrorCategory.NETWORK, ErrorSeverity.WARNING,
                         {'version': version})
            self._degrade(
                f"Provenance for v{version} unavailable ({e.message}); "
                f"falling back to embedded hash table"
            )
            return None

        if text is None:
            self._degrade(f"No provenance published for v{version}; falling back to embedded hash table")
            return None

        expected_tag = f"v{version}" if self.require_tag else None
        with tempfile.TemporaryDirectory(prefix='safe-upgrade-prov-') as work_dir:
            try:
                statements = parse_provenance_document(text)
                artifact = None
                if self.verifier.requires_artifact:
                    artifact = self.release_source.fetch_artifact(version, self.installer_asset, work_dir)
                verified = self.verifier.verify_document(artifact, statements, self.source_uri, expected_tag)
            except TrustError as e:
                self._blocked.add(version)
                logger.error(
                    f"Provenance for v{version} REJECTED: {e.message}. "
                    f"Provenance is blocked for this version; only the embedded table will be used"
                )
                self.notices.append(f"Provenance for v{version} rejected: {e.message}")
                return None
            except (NetworkError, ArtifactFetchError) as e:
                self._degrade(
                    f"Could not fetch {self.installer_asset} to anchor provenance for v{version} "
                    f"({e.message}); falling back to embedded hash table"
                )
                return None

        verified.version = version
        logger.info(f"Using {len(verified.digests)} provenance-verified digests for v{version}")
        return verified

    def merge_verified(self, version: str, digest_set: VerifiedDigestSet) -> None:
        """Merge a digest set verified outside the registry (verify-provenance)."""
        current = self._provenance.get(version)
        if current is None:
            digest_set.version = version
            self._provenance[version] = digest_set
        else:
            current.merge(digest_set)
        self._blocked.discard(version)
        for key in [k for k in self._cache if k[0] == version]:
            del self._cache[key]

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def expected_digest(
        self,
        version: Optional[str],
        path: str,
        asset: Optional[str] = None,
    ) -> VersionedDigest:
        """
        Expected digest of a file at a version.

        Args:
            version: Release version (None means unknown -> not found)
            path: Project-relative managed path
            asset: Release asset name, if it differs from the basename

        Raises:
            DigestNotFoundError: If neither source has a usable entry
        """
        if not version:
            raise DigestNotFoundError(version, path)

        version = version.lstrip('v')
        key = (version, path)
        if key in self._cache:
            cached = self._cache[key]
            if cached is None:
                raise DigestNotFoundError(version, path)
            return cached

        candidates = [path]
        for name in (asset, PurePosixPath(path).name):
            if name and name not in candidates:
                candidates.append(name)

        digest = None
        verified = self.provenance_digests(version)
        if verified is not None:
            for name in candidates:
                value = verified.get(name)
                if value:
                    digest = VersionedDigest(version, path, value, DigestSource.PROVENANCE)
                    break

        if digest is None:
            entry = self._embedded_lookup(version, candidates)
            if entry is not None:
                digest = VersionedDigest(version, path, entry[1], DigestSource.EMBEDDED, entry[2])

        self._cache[key] = digest
        if digest is None:
            raise DigestNotFoundError(version, path)
        return digest


def create_registry(
    config,
    release_source: Optional[ReleaseSource] = None,
    verifier: Optional[ProvenanceVerifier] = None,
    embedded_path: Union[str, Path] = EMBEDDED_TABLE_PATH,
) -> HashRegistry:
    """
    Build the session registry for an UpgradeConfig.

    The packaged table is trusted. A table named by ``embedded_hashes`` in
    the configuration is trusted only when it carries a valid signature from
    a configured release key; otherwise its digests can classify installed
    files but never authorize installing new ones.
    """
    registry = HashRegistry(
        embedded=load_hash_table(embedded_path) if Path(embedded_path).is_file() else None,
        release_source=release_source,
        verifier=verifier,
        source_uri=config.source_uri,
        installer_asset=config.installer_asset,
    )

    if config.embedded_hashes:
        extra_path = Path(config.embedded_hashes)
        trusted = verify_hash_document(extra_path, config.trusted_keys)
        registry.add_embedded(
            load_hash_table(extra_path),
            TrustLevel.TRUSTED if trusted else TrustLevel.UNKNOWN,
        )
        if not trusted:
            registry._degrade(f"Hash table {extra_path} is unsigned; its digests are not trusted for installs")

    return registry


__all__ = [
    'EMBEDDED_TABLE_PATH',
    'DigestSource',
    'TrustLevel',
    'VersionedDigest',
    'is_pending',
    'parse_hash_table',
    'load_hash_table',
    'HashRegistry',
    'create_registry',
]
