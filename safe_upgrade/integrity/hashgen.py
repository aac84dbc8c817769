"""
Release hash registry generator.

Used during the release process to record the known-good SHA-256 digest of
every managed file for a version, in a form the HashRegistry can load
(``embedded_hashes`` in the configuration, or merged into the packaged
table). The document can be signed with the release Ed25519 key; the
detached signature is written next to it as ``<file>.sig``.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import yaml
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from safe_upgrade.constants import Defaults, is_valid_version
from safe_upgrade.errors import TrustError
from safe_upgrade.integrity.signer import load_signing_key
from safe_upgrade.utils.fileops import atomic_write_bytes, sha256_file

logger = logging.getLogger(__name__)

RELEASE_FILES = (
    ".security-controls/bin/pinactlite",
    ".security-controls/bin/gitleakslite",
    "install-security-controls.sh",
    "uninstall-security-controls.sh",
    "yubikey-gitsign-toggle.sh",
)

FORMATS = ('json', 'yaml')
SIGNATURE_SUFFIX = '.sig'


def default_output_name(version: str, fmt: str) -> str:
    return f"release-hashes-{version}.{fmt}"


def generate_hash_document(
    root: Union[str, Path],
    version: str,
    files: Optional[Iterable[str]] = None,
    repository: str = Defaults.REPOSITORY,
) -> Dict[str, Any]:
    """
    Hash the release files of a project.

    Args:
        root: Project root
        version: MAJOR.MINOR.PATCH version being released
        files: Relative paths to hash (default: RELEASE_FILES)
        repository: owner/name recorded in the document

    Raises:
        ValueError: If the version is not MAJOR.MINOR.PATCH
    """
    if not is_valid_version(version) or version.startswith('v'):
        raise ValueError(f"Invalid version format: {version} (expected MAJOR.MINOR.PATCH)")

    base = Path(root)
    hashes: Dict[str, str] = {}
    for relative in files or RELEASE_FILES:
        path = base / relative
        if not path.is_file():
            logger.warning(f"Skipping missing file: {relative}")
            continue
        hashes[relative] = sha256_file(path)
        logger.info(f"Hashed {relative}")

    logger.info(f"Generated hash registry for {version} with {len(hashes)} files")
    return {
        'version': version,
        'generated': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
        'repository': f"https://{Defaults.SOURCE_HOST}/{repository}",
        'hashes': hashes,
    }


def render_hash_document(document: Mapping[str, Any], fmt: str) -> str:
    if fmt == 'json':
        return json.dumps(document, indent=2) + '\n'
    if fmt == 'yaml':
        return yaml.safe_dump(dict(document), sort_keys=False, default_flow_style=False)
    raise ValueError(f"Unknown format: {fmt}")


def write_hash_document(
    document: Mapping[str, Any],
    output_path: Union[str, Path],
    fmt: str,
    signing_key_path: Optional[str] = None,
    key_id: str = "release",
) -> Optional[Path]:
    """
    Write the document and, when a key is given, its detached signature.

    Returns:
        Path of the signature file, or None when unsigned
    """
    content = render_hash_document(document, fmt).encode('utf-8')
    atomic_write_bytes(output_path, content, mode=0o644)
    logger.info(f"Hash registry written: {output_path}")

    if not signing_key_path:
        return None

    signing_key = load_signing_key(signing_key_path)
    signature = signing_key.sign(content).signature
    sig_path = Path(f"{output_path}{SIGNATURE_SUFFIX}")
    sig_doc = {'keyid': key_id, 'signature': bytes(signature).hex()}
    atomic_write_bytes(sig_path, (json.dumps(sig_doc) + '\n').encode('utf-8'), mode=0o644)
    logger.info(f"Created signature: {sig_path}")
    return sig_path


def verify_hash_document(
    path: Union[str, Path],
    trusted_keys: Mapping[str, str],
) -> bool:
    """
    Check the detached signature of a hash document.

    Returns:
        True if signed by a trusted key, False if there is no signature or
        no trusted key to check it against

    Raises:
        TrustError: If a signature exists but does not verify
    """
    sig_path = Path(f"{path}{SIGNATURE_SUFFIX}")
    if not sig_path.is_file() or not trusted_keys:
        return False

    try:
        sig_doc = json.loads(sig_path.read_text(encoding='utf-8'))
        signature = bytes.fromhex(sig_doc['signature'])
    except (ValueError, KeyError, TypeError) as e:
        raise TrustError(f"Malformed hash registry signature: {e}", path=str(sig_path))

    content = Path(path).read_bytes()
    key_id = sig_doc.get('keyid')
    candidates = [trusted_keys[key_id]] if key_id in trusted_keys else list(trusted_keys.values())

    for key_hex in candidates:
        try:
            VerifyKey(bytes.fromhex(key_hex)).verify(content, signature)
        except (BadSignatureError, ValueError):
            continue
        logger.info(f"Hash registry {path} signature valid")
        return True

    raise TrustError("Hash registry signature does not match any trusted key", path=str(path))


__all__ = [
    'RELEASE_FILES',
    'FORMATS',
    'default_output_name',
    'generate_hash_document',
    'render_hash_document',
    'write_hash_document',
    'verify_hash_document',
]
