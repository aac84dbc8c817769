"""
Modification Resolver - decides what to do with files the user changed.

Only MODIFIED and UNKNOWN files are resolved. The resolver shows the diff
between the installed and the incoming content, then asks for one of:

    KEEP                 skip this file for this upgrade
    REPLACE              discard local changes
    BACKUP_THEN_REPLACE  snapshot, then overwrite
    MERGE                three-way merge (base / local / incoming)

Resolution never touches the managed tree. Diffs and merges run on copies
in a private temporary directory; merged content is kept in memory for the
apply phase. A cancelled or failed merge reverts the decision to KEEP.
"""

import logging
import tempfile
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Sequence

from safe_upgrade.constants import Paths, Timeouts
from safe_upgrade.errors import MergeToolError
from safe_upgrade.integrity.checker import FileCheck, IntegrityVerdict
from safe_upgrade.interaction import InteractionPort
from safe_upgrade.mergetools import (
    DiffPresenter,
    MergeTool,
    render_diff,
    select_diff_presenter,
    select_merge_tool,
)

logger = logging.getLogger(__name__)


class Decision(Enum):
    """Per-file resolution."""
    KEEP = "keep"
    REPLACE = "replace"
    BACKUP_THEN_REPLACE = "backup_then_replace"
    MERGE = "merge"

    @property
    def replaces(self) -> bool:
        return self != Decision.KEEP

    @property
    def needs_backup(self) -> bool:
        return self in (Decision.BACKUP_THEN_REPLACE, Decision.MERGE)


class BatchPolicy(Enum):
    """Single policy for all files needing review."""
    REVIEW_EACH = "review_each"
    BACKUP_ALL_AND_REPLACE = "backup_all_and_replace"
    CANCEL = "cancel"


FILE_OPTIONS = [
    (Decision.KEEP.value, "Keep my version (skip upgrade for this file)"),
    (Decision.REPLACE.value, "Replace with new version (your changes will be lost)"),
    (Decision.BACKUP_THEN_REPLACE.value, "Backup my version and install new version"),
    (Decision.MERGE.value, "Use merge tool to combine changes interactively"),
]

BATCH_OPTIONS = [
    (BatchPolicy.REVIEW_EACH.value, "View diffs and decide per file (recommended)"),
    (BatchPolicy.BACKUP_ALL_AND_REPLACE.value, "Backup all and proceed with upgrade"),
    (BatchPolicy.CANCEL.value, "Cancel upgrade"),
]

_VERDICT_LABELS = {
    IntegrityVerdict.MODIFIED: "MODIFIED",
    IntegrityVerdict.UNKNOWN: "unknown/not tracked",
}


class ModificationResolver:
    """
    Modification Resolver - collects decisions without mutating anything.

    Usage:
        resolver = ModificationResolver(interaction, merge_tool=os.environ.get('MERGE_TOOL'))
        policy = resolver.choose_batch_policy(report.with_verdict(MODIFIED, UNKNOWN))
        decision = resolver.resolve(path, verdict, installed, incoming)
        merged = resolver.merged_contents.get(path)
    """

    def __init__(
        self,
        interaction: InteractionPort,
        merge_tool: Optional[str] = None,
        diff_presenter: Optional[DiffPresenter] = None,
        tool_selector: Callable[[Optional[str]], Optional[MergeTool]] = select_merge_tool,
        merge_timeout: float = Timeouts.MERGE_PROCESS,
    ):
        self.interaction = interaction
        self.merge_tool = merge_tool
        self.diff_presenter = diff_presenter or select_diff_presenter()
        self.tool_selector = tool_selector
        self.merge_timeout = merge_timeout
        self.merged_contents: Dict[str, bytes] = {}

    def choose_batch_policy(self, checks: Sequence[FileCheck]) -> BatchPolicy:
        """Summarize all files needing review and ask for one policy."""
        self.interaction.notify(
            f"{len(checks)} file(s) differ from the installed release or are not tracked:",
            level="warning",
        )
        for check in checks:
            self.interaction.notify(f"  - {check.path} ({_VERDICT_LABELS.get(check.verdict, check.verdict.value)})")

        answer = self.interaction.choose("How do you want to handle them?", BATCH_OPTIONS)
        if answer is None:
            logger.info("Batch policy prompt quit or invalid; cancelling")
            return BatchPolicy.CANCEL
        policy = BatchPolicy(answer)
        logger.info(f"Batch policy: {policy.value}")
        return policy

    def resolve(
        self,
        path: str,
        verdict: IntegrityVerdict,
        old_content: bytes,
        new_content: bytes,
        base_content: Optional[bytes] = None,
    ) -> Decision:
        """
        Ask what to do with one file.

        Args:
            path: Managed path
            verdict: MODIFIED or UNKNOWN
            old_content: Installed content (with the user's changes)
            new_content: Verified incoming content
            base_content: Pristine content of the installed version, if known

        Returns:
            The Decision; MERGE only if a merge result was stored
        """
        if verdict not in (IntegrityVerdict.MODIFIED, IntegrityVerdict.UNKNOWN):
            raise ValueError(f"Only modified or unknown files are resolved, got {verdict.value}")

        self.merged_contents.pop(path, None)

        if old_content == new_content:
            self.interaction.notify(f"{path} already matches the incoming version")
            return Decision.REPLACE

        name = PurePosixPath(path).name
        with tempfile.TemporaryDirectory(prefix=f"{Paths.STAGING_PREFIX}resolve-") as work_dir:
            work = Path(work_dir)
            installed = work / 'installed' / name
            incoming = work / 'incoming' / name
            for target, content in ((installed, old_content), (incoming, new_content)):
                target.parent.mkdir()
                target.write_bytes(content)

            self.interaction.notify(f"File {_VERDICT_LABELS[verdict]}: {path}", level="warning")
            self.interaction.show_diff(path, render_diff(self.diff_presenter, installed, incoming, path))

            answer = self.interaction.choose(
                f"What would you like to do with {path}?",
                FILE_OPTIONS,
                default=Decision.KEEP.value,
            )
            decision = Decision(answer) if answer else Decision.KEEP

            if decision == Decision.MERGE:
                decision = self._merge(path, work, old_content, new_content, base_content)

        logger.info(f"Decision for {path}: {decision.value}")
        return decision

    def _merge(
        self,
        path: str,
        work: Path,
        old_content: bytes,
        new_content: bytes,
        base_content: Optional[bytes],
    ) -> Decision:
        tool = self.tool_selector(self.merge_tool)
        if tool is None:
            self.interaction.notify(
                "No merge tool found; set MERGE_TOOL to use a custom tool. Keeping your version.",
                level="warning",
            )
            return Decision.KEEP

        name = PurePosixPath(path).name
        merge_dir = work / 'merge'
        merge_dir.mkdir()
        base = merge_dir / f"{name}.base"
        local = merge_dir / f"{name}.local"
        remote = merge_dir / f"{name}.remote"
        output = merge_dir / f"{name}.merged"
        base.write_bytes(old_content if base_content is None else base_content)
        local.write_bytes(old_content)
        remote.write_bytes(new_content)

        if base_content is None:
            logger.debug(f"No pristine base for {path}; using installed content as merge base")

        self.interaction.notify(
            f"Launching {tool.name}: LEFT is your version, RIGHT is the new version. "
            f"Save the merged result and exit to continue."
        )
        try:
            merged = tool.merge(base, local, remote, output, timeout=self.merge_timeout)
        except MergeToolError as e:
            self.interaction.notify(f"Merge cancelled ({e.message}); keeping your version", level="warning")
            logger.warning(f"Merge of {path} failed: {e.message}")
            return Decision.KEEP

        self.merged_contents[path] = merged
        self.interaction.notify(f"Merge completed for {path}", level="success")
        return Decision.MERGE

    def apply_policy(self, policy: BatchPolicy, paths: List[str]) -> Dict[str, Decision]:
        """Decisions implied by a non-interactive batch policy."""
        if policy == BatchPolicy.BACKUP_ALL_AND_REPLACE:
            return {path: Decision.BACKUP_THEN_REPLACE for path in paths}
        raise ValueError(f"Policy {policy.value} does not imply decisions")


__all__ = [
    'Decision',
    'BatchPolicy',
    'FILE_OPTIONS',
    'BATCH_OPTIONS',
    'ModificationResolver',
]
