"""
Integrity Checker - classifies installed managed files against the registry.

Classification order for each file:
    absent on disk         -> MISSING
    no registry digest     -> UNKNOWN   (never treated as safe)
    digest equal           -> INTACT
    digest differs         -> MODIFIED

The checker is read-only: it never writes to the managed tree, so repeated
checks of an unchanged tree give identical reports.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from safe_upgrade.errors import DigestNotFoundError
from safe_upgrade.integrity.registry import HashRegistry, VersionedDigest
from safe_upgrade.manifest import ManagedFile
from safe_upgrade.utils.fileops import sha256_file

logger = logging.getLogger(__name__)


class IntegrityVerdict(Enum):
    """Integrity classification of one managed file."""
    INTACT = "intact"         # Matches the recorded digest
    MODIFIED = "modified"     # Differs from the recorded digest
    MISSING = "missing"       # Not on disk
    UNKNOWN = "unknown"       # No digest record to compare against


@dataclass
class FileCheck:
    """Result of checking one managed file."""
    file: ManagedFile
    verdict: IntegrityVerdict
    expected: Optional[VersionedDigest] = None
    actual: Optional[str] = None

    @property
    def path(self) -> str:
        return self.file.path

    @property
    def needs_review(self) -> bool:
        return self.verdict in (IntegrityVerdict.MODIFIED, IntegrityVerdict.UNKNOWN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'verdict': self.verdict.value,
            'expected': self.expected.sha256 if self.expected else None,
            'source': self.expected.source.value if self.expected else None,
            'actual': self.actual,
        }


@dataclass
class IntegrityReport:
    """Per-file verdicts for one version."""
    version: Optional[str]
    checks: Dict[str, FileCheck] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=datetime.now)
    duration_ms: float = 0.0

    @property
    def verdicts(self) -> Dict[str, IntegrityVerdict]:
        return {path: check.verdict for path, check in self.checks.items()}

    def count(self, verdict: IntegrityVerdict) -> int:
        return sum(1 for check in self.checks.values() if check.verdict == verdict)

    def with_verdict(self, *verdicts: IntegrityVerdict) -> List[FileCheck]:
        return [check for check in self.checks.values() if check.verdict in verdicts]

    @property
    def is_intact(self) -> bool:
        """True only when every file is INTACT."""
        return all(check.verdict == IntegrityVerdict.INTACT for check in self.checks.values())

    def summary(self) -> Dict[str, int]:
        return {verdict.value: self.count(verdict) for verdict in IntegrityVerdict}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'checked_at': self.checked_at.isoformat(),
            'duration_ms': self.duration_ms,
            'is_intact': self.is_intact,
            'summary': self.summary(),
            'files': [check.to_dict() for check in self.checks.values()],
        }


class IntegrityChecker:
    """
    Integrity Checker - compares installed files with expected digests.

    Usage:
        checker = IntegrityChecker(registry, project_root)
        report = checker.check('0.6.10', config.managed_files)
        if not report.is_intact:
            ...
    """

    def __init__(self, registry: HashRegistry, root: Union[str, Path]):
        self.registry = registry
        self.root = Path(root)

    def check_file(self, version: Optional[str], managed: ManagedFile) -> FileCheck:
        path = self.root / managed.path
        if not path.is_file():
            logger.warning(f"File missing: {managed.path}")
            return FileCheck(managed, IntegrityVerdict.MISSING)

        actual = sha256_file(path)
        try:
            expected = self.registry.expected_digest(version, managed.path, managed.asset_name)
        except DigestNotFoundError:
            logger.warning(f"No hash record for {managed.path} in version {version or 'unknown'}")
            return FileCheck(managed, IntegrityVerdict.UNKNOWN, actual=actual)

        verdict = IntegrityVerdict.INTACT if actual == expected.sha256 else IntegrityVerdict.MODIFIED
        return FileCheck(managed, verdict, expected=expected, actual=actual)

    def check(self, version: Optional[str], files: Iterable[ManagedFile]) -> IntegrityReport:
        """
        Classify every managed file.

        Args:
            version: Installed version, or None when unknown
            files: Managed files to classify

        Returns:
            IntegrityReport keyed by managed path
        """
        start_time = time.time()
        report = IntegrityReport(version=version)

        for managed in files:
            report.checks[managed.path] = self.check_file(version, managed)

        report.duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Integrity check for {version or 'unknown version'}: "
            + ", ".join(f"{count} {name}" for name, count in report.summary().items() if count)
        )
        return report


__all__ = [
    'IntegrityVerdict',
    'FileCheck',
    'IntegrityReport',
    'IntegrityChecker',
]
