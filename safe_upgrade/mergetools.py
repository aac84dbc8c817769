"""
Diff and merge tool strategies.

Each supported external tool is one small strategy class. Tools are picked
by a preference-ordered probe: the MERGE_TOOL environment override first,
then meld -> kdiff3 -> vimdiff for merging and delta -> colordiff -> diff
for diffs. When no diff tool is installed the in-process difflib unified
diff is used.

All external invocations are bounded by a timeout.
"""

import difflib
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Type, Union

from safe_upgrade.constants import Defaults, Timeouts
from safe_upgrade.errors import MergeToolError
from safe_upgrade.utils.fileops import sha256_bytes

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
Which = Callable[[str], Optional[str]]


# =============================================================================
# MERGE TOOLS
# =============================================================================

class MergeTool(ABC):
    """
    A three-way (or two-way) merge tool.

    ``merge`` launches the tool and returns the merged bytes. The tool runs
    on private copies; the caller decides what to do with the result.
    """

    name = "abstract"
    three_way = True

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or self.name

    def available(self, which: Which = shutil.which) -> bool:
        return which(self.binary) is not None

    @abstractmethod
    def command(self, base: str, local: str, remote: str, output: str) -> List[str]:
        """Command line for the tool."""

    def result_path(self, local: str, output: str) -> str:
        return output

    def merge(
        self,
        base: PathLike,
        local: PathLike,
        remote: PathLike,
        output: PathLike,
        timeout: float = Timeouts.MERGE_PROCESS,
    ) -> bytes:
        """
        Run the tool and return the merged content.

        Raises:
            MergeToolError: If the tool is missing, fails, times out, or
                produced no result
        """
        command = self.command(str(base), str(local), str(remote), str(output))
        logger.info(f"Launching {self.name} for {'3-way' if self.three_way else '2-way'} merge")
        try:
            result = subprocess.run(command, timeout=timeout)
        except FileNotFoundError:
            raise MergeToolError(f"{self.binary} is not installed", phase="merge")
        except subprocess.TimeoutExpired:
            raise MergeToolError(f"{self.name} timed out after {timeout:.0f}s", phase="merge")

        if result.returncode != 0:
            raise MergeToolError(
                f"{self.name} exited with status {result.returncode} (merge cancelled)",
                phase="merge",
            )

        merged = Path(self.result_path(str(local), str(output)))
        if not merged.is_file():
            raise MergeToolError(f"{self.name} did not save a merged result", phase="merge")
        return merged.read_bytes()


class MeldTool(MergeTool):
    name = "meld"

    def command(self, base, local, remote, output):
        return [self.binary, local, base, remote, f"--output={output}"]


class KDiff3Tool(MergeTool):
    name = "kdiff3"

    def command(self, base, local, remote, output):
        return [self.binary, base, local, remote, "-o", output]


class VimdiffTool(MergeTool):
    """Two-way: the user edits their copy against the incoming version."""

    name = "vimdiff"
    three_way = False

    def command(self, base, local, remote, output):
        return [self.binary, "-c", "wincmd l", "-c", "diffthis", local, remote]

    def result_path(self, local, output):
        return local


class GenericMergeTool(MergeTool):
    """Any other tool named by MERGE_TOOL, invoked as ``tool local remote``."""

    three_way = False

    def __init__(self, binary: str):
        super().__init__(binary)
        self.name = Path(binary).name

    def command(self, base, local, remote, output):
        return [self.binary, local, remote]

    def result_path(self, local, output):
        return local


MERGE_TOOLS: Dict[str, Type[MergeTool]] = {
    'meld': MeldTool,
    'kdiff3': KDiff3Tool,
    'vimdiff': VimdiffTool,
}


def select_merge_tool(
    preferred: Optional[str] = None,
    preference: Sequence[str] = Defaults.MERGE_TOOL_PREFERENCE,
    which: Which = shutil.which,
) -> Optional[MergeTool]:
    """
    Pick a merge tool.

    Args:
        preferred: Explicit tool name (MERGE_TOOL override)
        preference: Probe order when no explicit tool is set
        which: Executable lookup (shutil.which)

    Returns:
        The first available tool, or None
    """
    if preferred:
        tool_cls = MERGE_TOOLS.get(Path(preferred).name)
        tool = tool_cls(preferred) if tool_cls else GenericMergeTool(preferred)
        if tool.available(which):
            return tool
        logger.warning(f"Merge tool '{preferred}' from MERGE_TOOL is not installed")
        return None

    for name in preference:
        tool_cls = MERGE_TOOLS.get(name)
        tool = tool_cls() if tool_cls else GenericMergeTool(name)
        if tool.available(which):
            logger.debug(f"Selected merge tool {name}")
            return tool

    logger.warning(f"No merge tool found (tried: {', '.join(preference)})")
    return None


# =============================================================================
# DIFF PRESENTERS
# =============================================================================

def _is_binary(content: bytes) -> bool:
    return b'\x00' in content[:8192]


class DiffPresenter(ABC):
    """Renders the difference between installed and incoming content as text."""

    name = "abstract"

    def available(self, which: Which = shutil.which) -> bool:
        return True

    @abstractmethod
    def render(self, old_path: PathLike, new_path: PathLike, label: str) -> str:
        """Diff text. Raises MergeToolError if the tool failed."""


class ExternalDiff(DiffPresenter):
    """An external diff program. Exit status 1 means 'files differ'."""

    args: Sequence[str] = ()

    def available(self, which: Which = shutil.which) -> bool:
        return which(self.name) is not None

    def render(self, old_path, new_path, label):
        command = [self.name, *self.args, str(old_path), str(new_path)]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors='replace',
                timeout=Timeouts.DIFF_PROCESS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise MergeToolError(f"{self.name} failed: {e}", path=label, phase="diff")
        if result.returncode > 1:
            raise MergeToolError(
                f"{self.name} exited with status {result.returncode}",
                path=label,
                phase="diff",
            )
        return result.stdout


class DeltaDiff(ExternalDiff):
    name = "delta"
    args = ("--side-by-side",)


class ColorDiff(ExternalDiff):
    name = "colordiff"
    args = ("-u",)


class UnifiedDiff(ExternalDiff):
    name = "diff"
    args = ("-u",)


class DifflibDiff(DiffPresenter):
    """In-process two-way unified diff."""

    name = "difflib"

    def render(self, old_path, new_path, label):
        old = Path(old_path).read_bytes() if Path(old_path).is_file() else b''
        new = Path(new_path).read_bytes() if Path(new_path).is_file() else b''
        return unified_diff(old, new, label)


def unified_diff(old: bytes, new: bytes, label: str) -> str:
    """Unified diff of two byte strings (binary content is summarized)."""
    if _is_binary(old) or _is_binary(new):
        return (
            f"Binary files differ: {label}\n"
            f"  installed: {sha256_bytes(old)}\n"
            f"  incoming:  {sha256_bytes(new)}\n"
        )
    lines = difflib.unified_diff(
        old.decode('utf-8', errors='replace').splitlines(keepends=True),
        new.decode('utf-8', errors='replace').splitlines(keepends=True),
        fromfile=f"{label} (installed)",
        tofile=f"{label} (incoming)",
    )
    return ''.join(lines)


DIFF_PRESENTERS: Dict[str, Type[DiffPresenter]] = {
    'delta': DeltaDiff,
    'colordiff': ColorDiff,
    'diff': UnifiedDiff,
}


def select_diff_presenter(
    preference: Sequence[str] = Defaults.DIFF_TOOL_PREFERENCE,
    which: Which = shutil.which,
) -> DiffPresenter:
    """First available diff tool in preference order, else difflib."""
    for name in preference:
        presenter_cls = DIFF_PRESENTERS.get(name)
        if presenter_cls is None:
            continue
        presenter = presenter_cls()
        if presenter.available(which):
            return presenter
    return DifflibDiff()


def render_diff(
    presenter: DiffPresenter,
    old_path: PathLike,
    new_path: PathLike,
    label: str,
) -> str:
    """Render with the presenter, falling back to difflib if the tool fails."""
    try:
        return presenter.render(old_path, new_path, label)
    except MergeToolError as e:
        logger.warning(f"{e.message}; using built-in diff")
        return DifflibDiff().render(old_path, new_path, label)


__all__ = [
    'MergeTool',
    'MeldTool',
    'KDiff3Tool',
    'VimdiffTool',
    'GenericMergeTool',
    'MERGE_TOOLS',
    'select_merge_tool',
    'DiffPresenter',
    'DeltaDiff',
    'ColorDiff',
    'UnifiedDiff',
    'DifflibDiff',
    'unified_diff',
    'select_diff_presenter',
    'render_diff',
]
