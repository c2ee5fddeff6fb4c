#!/usr/bin/env python3
"""
Sign release artifacts for the update server.

Runs on the release machine (never on the server): hashes an artifact, signs
``signing_payload(version, platform, sha256)`` with the Ed25519 private key,
and writes ``<artifact>.manifest.json`` next to it.

Usage:
    python -m scripts.sign_release keygen --out keys/release
    python -m scripts.sign_release sign dist/BuildingForge-1.3.0-linux-x64.AppImage \\
        --version 1.3.0 --platform linux-x64 --key keys/release.key
    python -m scripts.sign_release checksums dist/
    python -m scripts.sign_release checksums dist/ --verify

Exit code 0 = success; 1 = error.
"""

from __future__ import annotations

import argparse
import base64
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from nacl.encoding import Base64Encoder
from nacl.signing import SigningKey

from forgeupdate.contracts.release import ManifestDocument, Platform, signing_payload
from forgeupdate.releases.manifest import (
    CHECKSUMS_FILENAME,
    compute_file_sha256,
    generate_checksums_txt,
    is_candidate_artifact,
    parse_checksums_txt,
    save_manifest_document,
)


def generate_keypair() -> tuple[str, str]:
    """Create a new Ed25519 key pair.

    Returns:
        (private_key_b64, public_key_b64)
    """
    key = SigningKey.generate()
    private_b64 = key.encode(encoder=Base64Encoder).decode()
    public_b64 = key.verify_key.encode(encoder=Base64Encoder).decode()
    return private_b64, public_b64


def load_signing_key(path: Path) -> SigningKey:
    """Read a base64 private key file."""
    return SigningKey(path.read_text(encoding="utf-8").strip().encode(), encoder=Base64Encoder)


def sign_payload(key: SigningKey, payload: bytes) -> str:
    """Detached base64 signature over payload bytes."""
    return base64.b64encode(key.sign(payload).signature).decode()


def sign_artifact(
    artifact: Path,
    key: SigningKey,
    *,
    version: str,
    platform: Platform,
    published_at: datetime | None = None,
    cdn_url: str | None = None,
    mirrored: bool = False,
) -> tuple[ManifestDocument, Path]:
    """Hash, sign and write the manifest for one artifact.

    Returns:
        (document, manifest_path)

    Raises:
        pydantic.ValidationError: If version/cdn_url are malformed.
        OSError: If the artifact cannot be read or the manifest written.
    """
    checksum = compute_file_sha256(artifact)
    document = ManifestDocument(
        version=version,
        platform=platform,
        checksum=checksum,
        signature=sign_payload(key, signing_payload(version, platform, checksum)),
        published_at=published_at or datetime.now(UTC),
        cdn_url=cdn_url,
        mirrored=mirrored,
    )
    return document, save_manifest_document(document, artifact)


def write_checksums(release_dir: Path) -> Path:
    """Write checksums.sha256 covering every artifact directly in release_dir."""
    entries = [
        (path.name, compute_file_sha256(path))
        for path in sorted(release_dir.iterdir())
        if path.is_file() and not path.is_symlink() and is_candidate_artifact(path)
    ]
    out = release_dir / CHECKSUMS_FILENAME
    out.write_text(generate_checksums_txt(entries), encoding="utf-8")
    return out


def verify_checksums(release_dir: Path) -> list[str]:
    """Compare release_dir against its checksums.sha256.

    Returns:
        One problem line per missing, changed or unlisted artifact (empty if clean).

    Raises:
        OSError: If checksums.sha256 cannot be read.
    """
    expected = parse_checksums_txt((release_dir / CHECKSUMS_FILENAME).read_text(encoding="utf-8"))
    problems: list[str] = []
    for name, sha256 in sorted(expected.items()):
        path = release_dir / name
        if not path.is_file():
            problems.append(f"MISSING {name}")
        elif compute_file_sha256(path) != sha256:
            problems.append(f"MISMATCH {name}")
    for path in sorted(release_dir.iterdir()):
        if path.name in expected or path.is_symlink():
            continue
        if path.is_file() and is_candidate_artifact(path):
            problems.append(f"UNLISTED {path.name}")
    return problems


def _cmd_keygen(args: argparse.Namespace) -> int:
    private_b64, public_b64 = generate_keypair()
    key_path = Path(f"{args.out}.key")
    pub_path = Path(f"{args.out}.pub")
    if key_path.exists() and not args.force:
        print(f"ERROR: {key_path} exists (use --force to overwrite)")
        return 1
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(private_b64 + "\n", encoding="utf-8")
    key_path.chmod(0o600)
    pub_path.write_text(public_b64 + "\n", encoding="utf-8")
    print(f"Private key: {key_path} (keep offline)")
    print(f"Public key:  {pub_path}")
    print(f"PUBLIC_KEY={public_b64}")
    return 0


def _cmd_sign(args: argparse.Namespace) -> int:
    platform = Platform.parse(args.platform)
    if platform is None:
        valid = ", ".join(p.value for p in Platform)
        print(f"ERROR: unknown platform {args.platform!r}; expected one of {valid}")
        return 1
    if not args.artifact.is_file():
        print(f"ERROR: artifact not found: {args.artifact}")
        return 1
    try:
        key = load_signing_key(args.key)
        document, manifest_path = sign_artifact(
            args.artifact,
            key,
            version=args.version,
            platform=platform,
            cdn_url=args.cdn_url,
            mirrored=args.mirrored,
        )
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1
    print(f"  OK {args.artifact.name} ({document.checksum[:16]}...)")
    print(f"Manifest: {manifest_path}")
    return 0


def _cmd_checksums(args: argparse.Namespace) -> int:
    if not args.release_dir.is_dir():
        print(f"ERROR: not a directory: {args.release_dir}")
        return 1
    if args.verify:
        try:
            problems = verify_checksums(args.release_dir)
        except OSError as e:
            print(f"ERROR: cannot read {CHECKSUMS_FILENAME}: {e.strerror}")
            return 1
        for problem in problems:
            print(f"  {problem}")
        if problems:
            print(f"FAILED: {len(problems)} problem(s)")
            return 1
        print("All checksums match")
        return 0
    out = write_checksums(args.release_dir)
    print(f"Wrote {out}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sign update server release artifacts.")
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Generate an Ed25519 key pair")
    keygen.add_argument("--out", type=str, required=True, help="Path prefix for .key/.pub files")
    keygen.add_argument("--force", action="store_true", help="Overwrite existing key")

    sign = sub.add_parser("sign", help="Write a signed manifest for an artifact")
    sign.add_argument("artifact", type=Path)
    sign.add_argument("--version", required=True, help="Semantic version, e.g. 1.3.0")
    sign.add_argument("--platform", required=True, help="Platform tag, e.g. linux-x64")
    sign.add_argument("--key", type=Path, required=True, help="Base64 private key file")
    sign.add_argument("--cdn-url", default=None, help="Explicit https CDN URL")
    sign.add_argument("--mirrored", action="store_true", help="Artifact already on the CDN")

    checksums = sub.add_parser("checksums", help=f"Write {CHECKSUMS_FILENAME} for a directory")
    checksums.add_argument("release_dir", type=Path)
    checksums.add_argument(
        "--verify", action="store_true", help=f"Check artifacts against an existing {CHECKSUMS_FILENAME}"
    )

    args = parser.parse_args(argv)
    handlers = {"keygen": _cmd_keygen, "sign": _cmd_sign, "checksums": _cmd_checksums}
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
