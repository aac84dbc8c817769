#!/usr/bin/env python3
"""
safe-upgrade - Integrity-verified upgrade of installed security controls

Commands:
    check               Verify installed files against known-good digests
    upgrade             Upgrade to the latest release (default)
    force               Upgrade without confirmations (backups still made)
    rollback            Restore files from a previous backup batch
    verify-provenance   Verify an artifact against signed release provenance
    generate-hashes     Generate the release hash registry for a version
    sign-provenance     Sign release provenance (release maintainers)
    keygen              Generate an Ed25519 release signing keypair

Usage:
    safe-upgrade check
    safe-upgrade
    safe-upgrade upgrade --to 0.7.0
    safe-upgrade force
    safe-upgrade rollback
    safe-upgrade verify-provenance install-security-controls.sh 0.7.0
    safe-upgrade generate-hashes 0.7.0 --format yaml --sign-key release.key

Environment:
    MERGE_TOOL                  Merge tool to use (meld, kdiff3, vimdiff, ...)
    SAFE_UPGRADE_RELEASE_DIR    Read releases from a local directory
    SAFE_UPGRADE_TRUSTED_KEY    Extra trusted release public key (hex)
    SAFE_UPGRADE_VERBOSE        Verbose logging
"""

import argparse
import json
import os
import sys
from pathlib import Path

from safe_upgrade.backup import BackupManager
from safe_upgrade.config import ConfigError, load_config
from safe_upgrade.constants import is_valid_version
from safe_upgrade.errors import NetworkError, TrustError, UpgradeError, VersionMarkerError
from safe_upgrade.integrity.checker import IntegrityChecker, IntegrityVerdict
from safe_upgrade.integrity.hashgen import (
    FORMATS,
    default_output_name,
    generate_hash_document,
    write_hash_document,
)
from safe_upgrade.integrity.provenance import create_verifier, parse_provenance_document
from safe_upgrade.integrity.registry import create_registry
from safe_upgrade.integrity.signer import ProvenanceSigner, generate_keypair
from safe_upgrade.integrity.slsa_install import ensure_slsa_verifier
from safe_upgrade.interaction import TerminalInteraction
from safe_upgrade.logging_config import configure_from_environment, get_logger
from safe_upgrade.orchestrator import UpgradeOrchestrator, UpgradeState
from safe_upgrade.release import create_release_source
from safe_upgrade.version import VersionMarker

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNAVAILABLE = 2
EXIT_INTERRUPTED = 130

_VERDICT_LINES = {
    IntegrityVerdict.INTACT: "intact",
    IntegrityVerdict.MODIFIED: "MODIFIED",
    IntegrityVerdict.MISSING: "MISSING",
    IntegrityVerdict.UNKNOWN: "unknown/not tracked",
}


# =============================================================================
# HELPERS
# =============================================================================

def _load_config(args):
    config = load_config(args.root, args.config)
    if args.release_dir:
        config.release_dir = args.release_dir
    return config


def _build_verifier(config, interaction):
    binary = None
    if config.verifier == 'slsa-verifier':
        binary = ensure_slsa_verifier(interaction)
    return create_verifier(
        config.verifier,
        trusted_keys=config.trusted_keys,
        require_transparency_log=config.require_transparency_log,
        timeout=config.verifier_timeout,
        binary=binary,
    )


def _build_registry(config, release_source, verifier):
    return create_registry(config, release_source=release_source, verifier=verifier)


def _print_report(report):
    print(f"Integrity report for version {report.version or 'unknown'}:")
    for check in report.checks.values():
        print(f"  {check.path} - {_VERDICT_LINES[check.verdict]}")
    print()
    print("Summary:")
    print(f"  Total files checked:  {len(report.checks)}")
    print(f"  Intact:               {report.count(IntegrityVerdict.INTACT)}")
    print(f"  Modified:             {report.count(IntegrityVerdict.MODIFIED)}")
    print(f"  Missing:              {report.count(IntegrityVerdict.MISSING)}")
    print(f"  Unknown/Not tracked:  {report.count(IntegrityVerdict.UNKNOWN)}")


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_check(args):
    """Integrity-only report. Exit 0 iff every file is intact."""
    config = _load_config(args)
    try:
        version = VersionMarker(args.root).read_version()
    except VersionMarkerError as e:
        print(f"Error: {e.describe()}", file=sys.stderr)
        return EXIT_FAILURE

    if version is None:
        print("Cannot determine installed version; every file will be reported as unknown",
              file=sys.stderr)

    interaction = TerminalInteraction(use_colors=not args.no_color)
    registry = _build_registry(config, create_release_source(config), _build_verifier(config, interaction))
    report = IntegrityChecker(registry, args.root).check(version, config.managed_files)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)
        for notice in registry.notices:
            print(f"Warning: {notice}", file=sys.stderr)

    return EXIT_OK if report.is_intact else EXIT_FAILURE


def cmd_upgrade(args, force=False):
    """Run the upgrade orchestrator."""
    config = _load_config(args)
    release_source = create_release_source(config)
    interaction = TerminalInteraction(use_colors=not args.no_color)
    registry = _build_registry(config, release_source, _build_verifier(config, interaction))

    orchestrator = UpgradeOrchestrator(
        args.root, config, registry, release_source, interaction, force=force,
    )
    result = orchestrator.run(getattr(args, 'to', None))

    if getattr(args, 'json', False):
        print(json.dumps(result.to_dict(), indent=2))

    if result.state == UpgradeState.DONE and result.anomalies:
        print()
        print("Upgrade finished with anomalies:")
        for path in result.anomalies:
            print(f"  - {path}")
        print("Run 'safe-upgrade check' to inspect, or 'safe-upgrade rollback' to restore backups.")
    elif result.state == UpgradeState.FAILED and result.error is not None:
        print(f"Next step: {result.error.next_step}", file=sys.stderr)

    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_force(args):
    """Upgrade without confirmations."""
    return cmd_upgrade(args, force=True)


def cmd_rollback(args):
    """Rollback wizard."""
    config = _load_config(args)
    manager = BackupManager(args.root, managed_files=config.managed_files)
    if not manager.list_batches():
        print("No backups available for rollback", file=sys.stderr)
        return EXIT_FAILURE

    result = manager.rollback(TerminalInteraction(use_colors=not args.no_color))
    if result is None or result.cancelled:
        return EXIT_OK

    print()
    print(f"Restored {len(result.restored)} file(s) from batch {result.batch_id}")
    for path, next_step in result.skipped:
        print(f"  Skipped {path}: {next_step}")
    print("Tip: run 'safe-upgrade check' to verify the restored installation")
    return EXIT_OK


def cmd_verify_provenance(args):
    """Standalone provenance verification. 0 ok, 1 trust failure, 2 unavailable."""
    config = _load_config(args)
    version = args.version.lstrip('v')
    if not is_valid_version(version):
        print(f"Error: invalid version {args.version}", file=sys.stderr)
        return EXIT_FAILURE

    artifact = Path(args.artifact)
    if not artifact.is_file():
        print(f"Error: artifact not found: {artifact}", file=sys.stderr)
        return EXIT_FAILURE

    release_source = create_release_source(config)
    if args.provenance:
        try:
            text = Path(args.provenance).read_text(encoding='utf-8')
        except OSError as e:
            print(f"Error: cannot read provenance: {e}", file=sys.stderr)
            return EXIT_UNAVAILABLE
    else:
        try:
            text = release_source.fetch_provenance(version)
        except NetworkError as e:
            print(f"Provenance unavailable: {e.describe()}", file=sys.stderr)
            return EXIT_UNAVAILABLE
        if text is None:
            print(f"Provenance unavailable: release v{version} publishes no provenance", file=sys.stderr)
            return EXIT_UNAVAILABLE

    print(f"Verifying {artifact} against provenance for v{version}")
    print(f"  Expected source: {config.source_uri}")
    print(f"  Verifier: {config.verifier}")
    print()

    verifier = _build_verifier(config, TerminalInteraction(use_colors=not args.no_color))
    try:
        statements = parse_provenance_document(text)
        digests = verifier.verify_document(
            artifact, statements, config.source_uri, f"v{version}",
        )
    except TrustError as e:
        print(f"VERIFICATION FAILED: {e.describe()}", file=sys.stderr)
        return EXIT_FAILURE

    print("VERIFICATION PASSED")
    print(f"  Builder: {digests.builder_id or 'unknown'}")
    print(f"  Attested files: {len(digests.digests)}")
    for name, digest in sorted(digests.digests.items()):
        print(f"    {name}: {digest}")

    if args.check:
        registry = _build_registry(config, release_source, verifier)
        registry.merge_verified(version, digests)
        report = IntegrityChecker(registry, args.root).check(version, config.managed_files)
        print()
        _print_report(report)
    return EXIT_OK


def cmd_generate_hashes(args):
    """Generate the release hash registry."""
    config = _load_config(args)
    try:
        document = generate_hash_document(args.root, args.version, repository=config.repository)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    output = args.output or default_output_name(args.version, args.format)
    sig_path = write_hash_document(
        document, output, args.format,
        signing_key_path=args.sign_key,
        key_id=args.key_id,
    )

    print(f"Hash registry generated: {output} ({len(document['hashes'])} files)")
    if sig_path:
        print(f"Signature: {sig_path}")
    print()
    print("Next steps:")
    print(f"  1. Include in the GitHub release: gh release upload v{args.version} {output}")
    print("  2. Point 'embedded_hashes' in upgrade.yaml at the file for offline installs")
    return EXIT_OK


def cmd_sign_provenance(args):
    """Sign release provenance for a directory of release assets."""
    config = _load_config(args)
    if not is_valid_version(args.version):
        print(f"Error: invalid version {args.version}", file=sys.stderr)
        return EXIT_FAILURE

    names = args.files or sorted(
        {m.asset_name for m in config.managed_files} | {config.installer_asset}
    )
    signer = ProvenanceSigner(signing_key_path=args.key, key_id=args.key_id)
    subjects = signer.hash_files(args.dir, names)
    if not subjects:
        print(f"Error: no release files found in {args.dir}", file=sys.stderr)
        return EXIT_FAILURE

    statement = signer.build_statement(subjects, config.source_uri, f"v{args.version.lstrip('v')}")
    envelope = signer.sign_statement(statement, tlog_index=args.tlog_index)
    output = args.output or os.path.join(args.dir, config.provenance_asset)
    signer.write_provenance([envelope], output)

    print(f"Signed {len(subjects)} files for v{args.version.lstrip('v')}")
    print(f"Provenance: {output}")
    print(f"Public key for verification ({args.key_id}): {signer.public_key}")
    return EXIT_OK


def cmd_keygen(args):
    """Generate a release signing keypair."""
    private_path = Path(args.output)
    if private_path.exists() and not args.force:
        print(f"Error: {private_path} exists (use --force to overwrite)", file=sys.stderr)
        return EXIT_FAILURE

    private_key, public_key = generate_keypair()
    private_path.parent.mkdir(parents=True, exist_ok=True)
    with open(private_path, 'w') as f:
        f.write(private_key.hex())
    os.chmod(private_path, 0o600)

    public_path = Path(f"{private_path}.pub")
    with open(public_path, 'w') as f:
        f.write(public_key.hex() + '\n')

    print(f"Private key saved to: {private_path}")
    print(f"Public key saved to: {public_path}")
    print()
    print("Add the public key to upgrade.yaml:")
    print("  trusted_keys:")
    print(f"    {args.key_id}: {public_key.hex()}")
    print()
    print(f"Keep {private_path} OFFLINE and never commit it to version control")
    return EXIT_OK


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        prog='safe-upgrade',
        description='Integrity-verified upgrade of installed security controls',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--root', default='.', help='Project root holding the managed files')
    parser.add_argument('--config', help='Configuration file (default: .security-controls/upgrade.yaml)')
    parser.add_argument('--release-dir', help='Read releases from a local directory instead of GitHub')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    parser.add_argument('--json-logs', action='store_true', help='Emit logs as JSON')
    parser.add_argument('--log-file', help='Also write logs to a file')
    parser.add_argument('--no-color', action='store_true', help='Disable colors')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # check
    check_parser = subparsers.add_parser('check', help='Verify installed files (exit 1 unless all intact)')
    check_parser.add_argument('--json', action='store_true', help='JSON report')
    check_parser.set_defaults(func=cmd_check)

    # upgrade
    upgrade_parser = subparsers.add_parser('upgrade', help='Upgrade to the latest release')
    upgrade_parser.add_argument('--to', metavar='VERSION', help='Target version (default: latest)')
    upgrade_parser.add_argument('--json', action='store_true', help='JSON result')
    upgrade_parser.set_defaults(func=cmd_upgrade)

    # force
    force_parser = subparsers.add_parser('force', help='Upgrade without confirmations (backups still made)')
    force_parser.add_argument('--to', metavar='VERSION', help='Target version (default: latest)')
    force_parser.add_argument('--json', action='store_true', help='JSON result')
    force_parser.set_defaults(func=cmd_force)

    # rollback
    rollback_parser = subparsers.add_parser('rollback', help='Restore a previous backup batch')
    rollback_parser.set_defaults(func=cmd_rollback)

    # verify-provenance
    verify_parser = subparsers.add_parser('verify-provenance', help='Verify an artifact against release provenance')
    verify_parser.add_argument('artifact', help='Artifact file to verify')
    verify_parser.add_argument('version', help='Release version (e.g. 0.7.0)')
    verify_parser.add_argument('--provenance', metavar='FILE', help='Local provenance file instead of downloading')
    verify_parser.add_argument('--check', action='store_true',
                               help='Also check installed files against the verified digests')
    verify_parser.set_defaults(func=cmd_verify_provenance)

    # generate-hashes
    hashes_parser = subparsers.add_parser('generate-hashes', help='Generate the release hash registry')
    hashes_parser.add_argument('version', help='Version number (MAJOR.MINOR.PATCH)')
    hashes_parser.add_argument('--format', '-f', choices=FORMATS, default='yaml')
    hashes_parser.add_argument('--output', '-o', help='Output file (default: release-hashes-VERSION.FORMAT)')
    hashes_parser.add_argument('--sign-key', metavar='KEY', help='Ed25519 private key to sign the registry')
    hashes_parser.add_argument('--key-id', default='release', help='Key id recorded with the signature')
    hashes_parser.set_defaults(func=cmd_generate_hashes)

    # sign-provenance
    sign_parser = subparsers.add_parser('sign-provenance', help='Sign release provenance')
    sign_parser.add_argument('version', help='Release version')
    sign_parser.add_argument('--dir', required=True, help='Directory holding the release assets')
    sign_parser.add_argument('--key', required=True, help='Ed25519 private key file')
    sign_parser.add_argument('--key-id', default='release', help='Key id recorded in the envelope')
    sign_parser.add_argument('--files', nargs='*', help='Asset names to attest (default: managed files)')
    sign_parser.add_argument('--output', '-o', help='Output file (default: <dir>/multiple.intoto.jsonl)')
    sign_parser.add_argument('--tlog-index', type=int, help='Transparency log index (writes a bundle)')
    sign_parser.set_defaults(func=cmd_sign_provenance)

    # keygen
    keygen_parser = subparsers.add_parser('keygen', help='Generate a release signing keypair')
    keygen_parser.add_argument('--output', '-o', default='release.key', help='Private key path')
    keygen_parser.add_argument('--key-id', default='release', help='Key id to use in upgrade.yaml')
    keygen_parser.add_argument('--force', action='store_true', help='Overwrite an existing key')
    keygen_parser.set_defaults(func=cmd_keygen)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_from_environment(
        verbose=args.verbose or None,
        log_file=args.log_file,
        json_format=args.json_logs or None,
        use_colors=False if args.no_color else None,
    )

    if not args.command:
        args.func = cmd_upgrade

    try:
        result = args.func(args)
    except ConfigError as e:
        print(f"Configuration error: {e.describe()}", file=sys.stderr)
        return EXIT_FAILURE
    except UpgradeError as e:
        logger.error(e.describe())
        print(f"Error: {e.describe()}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED

    return result if result else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
