"""
Pytest configuration and shared fixtures for Safe Upgrade tests.

This module provides a throwaway project tree, a signing key, a local
release directory with signed provenance, and a scripted interaction port
so the upgrade engine can run without a terminal or network.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

import pytest
from nacl.signing import SigningKey

# Add the parent directory to the path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from safe_upgrade.config import UpgradeConfig
from safe_upgrade.integrity.provenance import Ed25519Backend, ProvenanceVerifier
from safe_upgrade.integrity.registry import HashRegistry
from safe_upgrade.integrity.signer import ProvenanceSigner
from safe_upgrade.interaction import InteractionPort
from safe_upgrade.manifest import DEFAULT_MANAGED_FILES
from safe_upgrade.mergetools import DifflibDiff
from safe_upgrade.release import LocalReleaseSource
from safe_upgrade.resolver import ModificationResolver

SOURCE_URI = "github.com/h4x0r/1-click-github-sec"
OLD_VERSION = "0.6.10"
NEW_VERSION = "0.7.0"


def release_contents(version: str) -> Dict[str, bytes]:
    """Content of every default managed file as shipped in a release."""
    return {
        managed.path: f"#!/bin/sh\n# {managed.name} {version}\necho {managed.name}\n".encode()
        for managed in DEFAULT_MANAGED_FILES
    }


# ===========================================================================
# Test doubles
# ===========================================================================

class ScriptedInteraction(InteractionPort):
    """Interaction port driven by queued answers; records everything shown."""

    def __init__(self, confirms: Optional[List[bool]] = None, choices: Optional[List[Optional[str]]] = None):
        self.confirms = list(confirms or [])
        self.choices = list(choices or [])
        self.questions: List[str] = []
        self.prompts: List[Tuple[str, List[str]]] = []
        self.diffs: List[Tuple[str, str]] = []
        self.messages: List[Tuple[str, str]] = []

    def confirm(self, question, default=False):
        self.questions.append(question)
        if not self.confirms:
            raise AssertionError(f"Unexpected confirmation: {question}")
        return self.confirms.pop(0)

    def choose(self, prompt, options, default=None):
        self.prompts.append((prompt, [key for key, _ in options]))
        if not self.choices:
            raise AssertionError(f"Unexpected prompt: {prompt}")
        return self.choices.pop(0)

    def show_diff(self, label, diff_text):
        self.diffs.append((label, diff_text))

    def notify(self, message, level="info"):
        self.messages.append((level, message))

    def shown(self, fragment: str) -> bool:
        return any(fragment in message for _, message in self.messages)


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="safe_upgrade_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def project_root(temp_dir: Path) -> Path:
    """An empty project with the control-state and hook directories."""
    root = temp_dir / "project"
    (root / ".security-controls" / "bin").mkdir(parents=True)
    (root / ".git" / "hooks").mkdir(parents=True)
    return root


def install_release(root: Path, version: str, contents: Optional[Dict[str, bytes]] = None) -> Dict[str, bytes]:
    """Lay down a release's files and version marker as the installer would."""
    contents = contents or release_contents(version)
    for path, content in contents.items():
        target = root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        target.chmod(0o755)
    (root / ".security-controls" / ".version").write_text(f'version="{version}"\n')
    return contents


# ===========================================================================
# Signing Fixtures
# ===========================================================================

@pytest.fixture
def signing_key() -> SigningKey:
    """Provide a fresh Ed25519 release key."""
    return SigningKey.generate()


@pytest.fixture
def trusted_keys(signing_key: SigningKey) -> Dict[str, str]:
    """Public half of the release key, as configured in upgrade.yaml."""
    return {'release': bytes(signing_key.verify_key).hex()}


@pytest.fixture
def signer(signing_key: SigningKey) -> ProvenanceSigner:
    return ProvenanceSigner(signing_key=bytes(signing_key), key_id='release')


@pytest.fixture
def verifier(trusted_keys: Dict[str, str]) -> ProvenanceVerifier:
    return ProvenanceVerifier(Ed25519Backend(trusted_keys))


# ===========================================================================
# Release Fixtures
# ===========================================================================

class ReleaseBuilder:
    """Writes releases into a local release directory."""

    def __init__(self, root: Path, signer: ProvenanceSigner):
        self.root = root
        self.signer = signer

    def publish(
        self,
        version: str,
        contents: Optional[Dict[str, bytes]] = None,
        sign: bool = True,
        source_uri: str = SOURCE_URI,
    ) -> Dict[str, bytes]:
        """Write assets (by basename) and signed provenance for a version."""
        contents = contents or release_contents(version)
        version_dir = self.root / version
        version_dir.mkdir(parents=True, exist_ok=True)
        for path, content in contents.items():
            (version_dir / Path(path).name).write_bytes(content)

        if sign:
            names = sorted(Path(path).name for path in contents)
            subjects = self.signer.hash_files(version_dir, names)
            statement = self.signer.build_statement(subjects, source_uri, f"v{version}")
            envelope = self.signer.sign_statement(statement)
            self.signer.write_provenance([envelope], version_dir / "multiple.intoto.jsonl")
        return contents

    def asset_path(self, version: str, path: str) -> Path:
        return self.root / version / Path(path).name


@pytest.fixture
def release_dir(temp_dir: Path) -> Path:
    path = temp_dir / "releases"
    path.mkdir()
    return path


@pytest.fixture
def releases(release_dir: Path, signer: ProvenanceSigner) -> ReleaseBuilder:
    """Provide a builder with the old and new versions already published."""
    builder = ReleaseBuilder(release_dir, signer)
    builder.publish(OLD_VERSION)
    builder.publish(NEW_VERSION)
    return builder


@pytest.fixture
def release_source(release_dir: Path) -> LocalReleaseSource:
    return LocalReleaseSource(release_dir)


@pytest.fixture
def upgrade_config(trusted_keys: Dict[str, str], release_dir: Path) -> UpgradeConfig:
    """Configuration pinned to the test release key and release directory."""
    return UpgradeConfig(
        repository="h4x0r/1-click-github-sec",
        trusted_keys=dict(trusted_keys),
        release_dir=str(release_dir),
    )


@pytest.fixture
def registry(release_source: LocalReleaseSource, verifier: ProvenanceVerifier) -> HashRegistry:
    """Provenance-backed registry with no embedded entries."""
    return HashRegistry(release_source=release_source, verifier=verifier, source_uri=SOURCE_URI)


@pytest.fixture
def interaction() -> ScriptedInteraction:
    return ScriptedInteraction()


@pytest.fixture
def resolver(interaction: ScriptedInteraction) -> ModificationResolver:
    """Resolver with the built-in diff and no merge tool."""
    return ModificationResolver(interaction, diff_presenter=DifflibDiff(), tool_selector=lambda preferred: None)


# ===========================================================================
# Pytest Configuration
# ===========================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that drive a full upgrade session"
    )
    config.addinivalue_line(
        "markers", "security: marks security-critical trust tests"
    )
