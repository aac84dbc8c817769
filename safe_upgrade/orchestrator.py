"""
Upgrade Orchestrator - runs one upgrade session end to end.

State machine:

    DETECT_VERSION ─► CHECK_INTEGRITY ─► [RESOLVE_ALL: batch policy]
        ─► FETCH_AND_VERIFY_NEW ─► [RESOLVE_ALL: per-file review]
        ─► APPLY ─► REVERIFY ─► DONE

    CANCELLED  the user declined; nothing was written
    FAILED     trust, network, or I/O failure; see UpgradeResult.error

Guarantees:
- Every incoming artifact matches a trusted registry digest for the target
  version before anything in the managed tree is touched.
- All decisions are collected before the first write.
- Apply phase 1 writes every backup; any failure stops before phase 2.
- Phase 2 replaces files atomically (temp file + rename).
- Files still not INTACT after apply (other than kept or merged ones) are
  reported as anomalies, never accepted silently.
"""

import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Union

from safe_upgrade.backup import BackupManager, BackupRecord
from safe_upgrade.config import UpgradeConfig
from safe_upgrade.constants import Paths, is_valid_version, version_key
from safe_upgrade.errors import (
    DigestNotFoundError,
    TrustError,
    UpgradeError,
    UserCancelledError,
    VersionMarkerError,
)
from safe_upgrade.integrity.checker import IntegrityChecker, IntegrityReport, IntegrityVerdict
from safe_upgrade.integrity.registry import HashRegistry
from safe_upgrade.interaction import InteractionPort
from safe_upgrade.logging_config import get_logger
from safe_upgrade.manifest import ManagedFile
from safe_upgrade.release import ReleaseSource
from safe_upgrade.resolver import BatchPolicy, Decision, ModificationResolver
from safe_upgrade.utils.fileops import UpgradeLock, atomic_write_bytes, sha256_file
from safe_upgrade.version import VersionMarker

logger = get_logger(__name__)


class UpgradeState(Enum):
    """Orchestrator states."""
    DETECT_VERSION = "detect_version"
    CHECK_INTEGRITY = "check_integrity"
    RESOLVE_ALL = "resolve_all"
    FETCH_AND_VERIFY_NEW = "fetch_and_verify_new"
    APPLY = "apply"
    REVERIFY = "reverify"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class UpgradeSession:
    """In-memory state of one run."""
    current_version: Optional[str] = None
    target_version: Optional[str] = None
    state: UpgradeState = UpgradeState.DETECT_VERSION
    report: Optional[IntegrityReport] = None
    policy: Optional[BatchPolicy] = None
    decisions: Dict[str, Decision] = field(default_factory=dict)
    merged_contents: Dict[str, bytes] = field(default_factory=dict)
    staged: Dict[str, Path] = field(default_factory=dict)
    backups: List[BackupRecord] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    restored_missing: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    @property
    def kept(self) -> List[str]:
        return [path for path, d in self.decisions.items() if d == Decision.KEEP]


@dataclass
class UpgradeResult:
    """Final outcome of a session."""
    state: UpgradeState
    session: UpgradeSession
    post_report: Optional[IntegrityReport] = None
    anomalies: List[str] = field(default_factory=list)
    error: Optional[UpgradeError] = None

    @property
    def success(self) -> bool:
        return self.state == UpgradeState.DONE and not self.anomalies

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'success': self.success,
            'current_version': self.session.current_version,
            'target_version': self.session.target_version,
            'decisions': {p: d.value for p, d in self.session.decisions.items()},
            'backups': [r.to_dict() for r in self.session.backups],
            'replaced': self.session.replaced,
            'restored_missing': self.session.restored_missing,
            'anomalies': self.anomalies,
            'notices': self.session.notices,
            'error': self.error.describe() if self.error else None,
        }


class UpgradeOrchestrator:
    """
    Upgrade Orchestrator.

    Usage:
        orchestrator = UpgradeOrchestrator(root, config, registry, source, TerminalInteraction())
        result = orchestrator.run()
        if not result.success:
            ...
    """

    def __init__(
        self,
        root: Union[str, Path],
        config: UpgradeConfig,
        registry: HashRegistry,
        release_source: ReleaseSource,
        interaction: InteractionPort,
        force: bool = False,
        resolver: Optional[ModificationResolver] = None,
        backups: Optional[BackupManager] = None,
    ):
        self.root = Path(root)
        self.config = config
        self.registry = registry
        self.release_source = release_source
        self.interaction = interaction
        self.force = force
        self.files: List[ManagedFile] = list(config.managed_files)
        self.marker = VersionMarker(self.root)
        self.checker = IntegrityChecker(registry, self.root)
        self.resolver = resolver or ModificationResolver(
            interaction,
            merge_tool=config.merge_tool,
        )
        self.backups = backups or BackupManager(self.root, managed_files=self.files)

    def run(self, target_version: Optional[str] = None) -> UpgradeResult:
        """
        Run a full upgrade session.

        Args:
            target_version: Version to upgrade to (default: latest release)

        Returns:
            UpgradeResult; never raises for upgrade errors
        """
        session = UpgradeSession()
        logger.pipeline_start("upgrade", force=self.force, root=str(self.root))

        try:
            with UpgradeLock(self.root / Paths.LOCK_FILE):
                with tempfile.TemporaryDirectory(prefix=f"{Paths.STAGING_PREFIX}staging-") as staging:
                    result = self._run(session, target_version, Path(staging))
        except UserCancelledError as e:
            session.state = UpgradeState.CANCELLED
            self.interaction.notify(f"Upgrade cancelled: {e.message}")
            result = UpgradeResult(UpgradeState.CANCELLED, session, error=e)
        except UpgradeError as e:
            failed_in = session.state
            session.state = UpgradeState.FAILED
            if e.phase is None:
                e.phase = failed_in.value
            logger.error(f"Upgrade failed: {e.describe()}")
            self.interaction.notify(f"Upgrade failed: {e.describe()}", level="error")
            result = UpgradeResult(UpgradeState.FAILED, session, error=e)

        logger.pipeline_end("upgrade", result.success, state=result.state.value,
                            anomalies=len(result.anomalies))
        return result

    # -------------------------------------------------------------------------
    # States
    # -------------------------------------------------------------------------

    def _run(self, session: UpgradeSession, target_version: Optional[str], staging: Path) -> UpgradeResult:
        self._detect_version(session)
        if not self._select_target(session, target_version):
            session.state = UpgradeState.DONE
            return UpgradeResult(UpgradeState.DONE, session)

        self._check_integrity(session)
        self._choose_policy(session)
        self._fetch_and_verify(session, staging)
        self._resolve_each(session)
        self._apply(session)
        return self._reverify(session)

    def _detect_version(self, session: UpgradeSession) -> None:
        session.state = UpgradeState.DETECT_VERSION
        logger.pipeline_step("detect_version")
        try:
            session.current_version = self.marker.read_version()
        except VersionMarkerError as e:
            logger.warning(e.describe())
            session.current_version = None

        if session.current_version:
            self.interaction.notify(f"Current installation: version {session.current_version}")
            return

        self.interaction.notify("Cannot detect current installation version", level="warning")
        if self.force:
            logger.warning("Force mode: proceeding without a known installed version")
            return
        if not self.interaction.confirm("Proceed with upgrade anyway?"):
            raise UserCancelledError("installed version unknown", phase=UpgradeState.DETECT_VERSION.value)

    def _select_target(self, session: UpgradeSession, target_version: Optional[str]) -> bool:
        target = target_version or self.release_source.latest_version()
        if not target:
            raise UpgradeError(
                "Cannot determine the version to upgrade to",
                phase=UpgradeState.DETECT_VERSION.value,
                next_step="pass an explicit target version or check network connectivity",
            )
        if not is_valid_version(target):
            raise UpgradeError(
                f"Invalid target version: {target}",
                phase=UpgradeState.DETECT_VERSION.value,
                next_step="pass a MAJOR.MINOR.PATCH version",
            )
        session.target_version = target.lstrip('v')

        current = session.current_version
        if current and version_key(current) >= version_key(session.target_version) and not self.force:
            self.interaction.notify(
                f"Already up to date (installed {current}, latest {session.target_version})",
                level="success",
            )
            return False

        self.interaction.notify(f"Upgrading to version {session.target_version}")
        return True

    def _check_integrity(self, session: UpgradeSession) -> None:
        session.state = UpgradeState.CHECK_INTEGRITY
        logger.pipeline_step("check_integrity", version=session.current_version)
        session.report = self.checker.check(session.current_version, self.files)

        for check in session.report.checks.values():
            if check.verdict == IntegrityVerdict.INTACT:
                self.interaction.notify(f"  {check.path} - intact")
            elif check.verdict == IntegrityVerdict.MISSING:
                self.interaction.notify(
                    f"  {check.path} - MISSING (will be restored from the new release)",
                    level="warning",
                )
            else:
                self.interaction.notify(f"  {check.path} - {check.verdict.value.upper()}", level="warning")
        self._collect_notices(session)

    def _choose_policy(self, session: UpgradeSession) -> None:
        review = session.report.with_verdict(IntegrityVerdict.MODIFIED, IntegrityVerdict.UNKNOWN)
        if not review:
            self.interaction.notify("All files intact - safe to upgrade", level="success")
            return

        session.state = UpgradeState.RESOLVE_ALL
        if self.force:
            logger.warning("Force mode: backing up all modified files and replacing them")
            session.policy = BatchPolicy.BACKUP_ALL_AND_REPLACE
        else:
            session.policy = self.resolver.choose_batch_policy(review)

        if session.policy == BatchPolicy.CANCEL:
            raise UserCancelledError("cancelled at modified-file review", phase=UpgradeState.RESOLVE_ALL.value)

    def _fetch_and_verify(self, session: UpgradeSession, staging: Path) -> None:
        session.state = UpgradeState.FETCH_AND_VERIFY_NEW
        logger.pipeline_step("fetch_and_verify_new", version=session.target_version)
        self.interaction.notify(f"Downloading version {session.target_version}...")

        for managed in self.files:
            dest_dir = staging / PurePosixPath(managed.path).parent
            dest_dir.mkdir(parents=True, exist_ok=True)
            staged = self.release_source.fetch_artifact(session.target_version, managed.asset_name, dest_dir)

            try:
                expected = self.registry.expected_digest(session.target_version, managed.path, managed.asset_name)
            except DigestNotFoundError:
                raise TrustError(
                    f"No trusted digest for incoming {managed.path} in version {session.target_version}",
                    path=managed.path,
                    phase=UpgradeState.FETCH_AND_VERIFY_NEW.value,
                )
            if not expected.trusted:
                raise TrustError(
                    f"Digest for incoming {managed.path} comes from an untrusted hash table",
                    path=managed.path,
                    phase=UpgradeState.FETCH_AND_VERIFY_NEW.value,
                )

            actual = sha256_file(staged)
            if actual != expected.sha256:
                raise TrustError(
                    f"Incoming {managed.path} does not match its {expected.source.value} digest",
                    path=managed.path,
                    phase=UpgradeState.FETCH_AND_VERIFY_NEW.value,
                )

            session.staged[managed.path] = staged
            logger.security(f"Verified incoming {managed.path} ({expected.source.value} digest)")

        self._collect_notices(session)

    def _resolve_each(self, session: UpgradeSession) -> None:
        for check in session.report.checks.values():
            if check.verdict == IntegrityVerdict.INTACT:
                session.decisions[check.path] = Decision.REPLACE
            elif check.verdict == IntegrityVerdict.MISSING:
                logger.warning(f"{check.path} is missing; restoring it from version {session.target_version}")
                session.decisions[check.path] = Decision.REPLACE
                session.restored_missing.append(check.path)

        review = session.report.with_verdict(IntegrityVerdict.MODIFIED, IntegrityVerdict.UNKNOWN)
        if not review:
            return

        session.state = UpgradeState.RESOLVE_ALL
        if session.policy == BatchPolicy.BACKUP_ALL_AND_REPLACE:
            session.decisions.update(self.resolver.apply_policy(session.policy, [c.path for c in review]))
            return

        for check in review:
            decision = self.resolver.resolve(
                check.path,
                check.verdict,
                (self.root / check.path).read_bytes(),
                session.staged[check.path].read_bytes(),
                self._base_content(session, check.file),
            )
            session.decisions[check.path] = decision
            if decision == Decision.MERGE:
                session.merged_contents[check.path] = self.resolver.merged_contents[check.path]

    def _base_content(self, session: UpgradeSession, managed: ManagedFile) -> Optional[bytes]:
        """Pristine content of the installed version, for three-way merges."""
        if not session.current_version:
            return None
        try:
            expected = self.registry.expected_digest(session.current_version, managed.path, managed.asset_name)
            with tempfile.TemporaryDirectory(prefix=f"{Paths.STAGING_PREFIX}base-") as work:
                fetched = self.release_source.fetch_artifact(session.current_version, managed.asset_name, work)
                if sha256_file(fetched) != expected.sha256:
                    logger.warning(f"Base content for {managed.path} does not match its digest; not used")
                    return None
                return fetched.read_bytes()
        except UpgradeError as e:
            logger.debug(f"No merge base for {managed.path}: {e.message}")
            return None

    def _apply(self, session: UpgradeSession) -> None:
        session.state = UpgradeState.APPLY
        logger.pipeline_step("apply", decisions=len(session.decisions))

        # Phase 1: backups. Any failure raises BackupIOError before a single replacement.
        to_backup = [
            path for path, decision in session.decisions.items()
            if decision.needs_backup and (self.root / path).is_file()
        ]
        if to_backup:
            self.backups.start_batch()
            for path in to_backup:
                session.backups.append(self.backups.backup(path))
            self.interaction.notify(
                f"Backed up {len(to_backup)} file(s) to {self.backups.backup_dir}",
                level="success",
            )

        # Phase 2: replacements
        by_path = {m.path: m for m in self.files}
        for path, decision in session.decisions.items():
            if not decision.replaces:
                logger.notice(f"Kept local {path}; it is not upgraded to {session.target_version}")
                self.interaction.notify(f"Keeping your version of {path}")
                continue

            content = session.merged_contents.get(path)
            if content is None:
                content = session.staged[path].read_bytes()

            target = self.root / path
            mode = None
            if not target.exists():
                mode = 0o755 if by_path[path].executable else 0o644
            try:
                atomic_write_bytes(target, content, mode=mode)
            except OSError as e:
                hint = (
                    "run 'safe-upgrade rollback' to restore this session's backups"
                    if session.backups else "re-run 'safe-upgrade force' to repair the installation"
                )
                raise UpgradeError(
                    f"Failed to install {path}: {e}",
                    path=path,
                    phase=UpgradeState.APPLY.value,
                    next_step=hint,
                )
            session.replaced.append(path)
            logger.info(f"Installed {path} ({decision.value})")

        self.marker.write_version(session.target_version, kept=','.join(session.kept))

    def _reverify(self, session: UpgradeSession) -> UpgradeResult:
        session.state = UpgradeState.REVERIFY
        logger.pipeline_step("reverify", version=session.target_version)
        post_report = self.checker.check(session.target_version, self.files)

        exempt = (Decision.KEEP, Decision.MERGE)
        anomalies = [
            path for path, check in post_report.checks.items()
            if check.verdict != IntegrityVerdict.INTACT and session.decisions.get(path) not in exempt
        ]
        for path in anomalies:
            message = f"Upgrade anomaly: {path} is {post_report.checks[path].verdict.value} after upgrade"
            logger.error(message)
            self.interaction.notify(message, level="error")

        session.state = UpgradeState.DONE
        if not anomalies:
            self.interaction.notify(
                f"Upgrade to version {session.target_version} completed successfully",
                level="success",
            )
        return UpgradeResult(UpgradeState.DONE, session, post_report=post_report, anomalies=anomalies)

    def _collect_notices(self, session: UpgradeSession) -> None:
        for notice in self.registry.notices:
            if notice not in session.notices:
                session.notices.append(notice)
                self.interaction.notify(notice, level="warning")


__all__ = [
    'UpgradeState',
    'UpgradeSession',
    'UpgradeResult',
    'UpgradeOrchestrator',
]
