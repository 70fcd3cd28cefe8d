#!/usr/bin/env python3
"""Generate the RSA key pairs hostgate deployments need.

Writes two pairs into the output directory:

    host_private.pem / host_public.pem    host assertion keys; the private
                                          half stays with the host, the
                                          public half is HOST_PUBLIC_KEY_PATH
    token_private.pem / token_public.pem  gateway token signing keys;
                                          TOKEN_PRIVATE_KEY_PATH

Usage:
    python scripts/generate_keys.py --out ./keys
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def generate_pair(key_size: int = 2048) -> tuple[bytes, bytes]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def _write(path: Path, data: bytes, mode: int, force: bool) -> None:
    if path.exists() and not force:
        raise FileExistsError(f"{path} exists; pass --force to overwrite")
    path.write_bytes(data)
    os.chmod(path, mode)


def write_pairs(out_dir: Path, *, key_size: int = 2048, force: bool = False) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for prefix in ("host", "token"):
        private_pem, public_pem = generate_pair(key_size)
        private_path = out_dir / f"{prefix}_private.pem"
        public_path = out_dir / f"{prefix}_public.pem"
        _write(private_path, private_pem, 0o600, force)
        _write(public_path, public_pem, 0o644, force)
        written.extend([private_path, public_path])
    return written


def main():
    parser = argparse.ArgumentParser(
        description="Generate RSA key pairs for hostgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--out", default="keys", help="Output directory")
    parser.add_argument("--bits", type=int, default=2048, help="RSA key size")
    parser.add_argument("--force", action="store_true", help="Overwrite existing files")
    args = parser.parse_args()

    if args.bits < 2048:
        print("Error: --bits must be at least 2048")
        sys.exit(1)

    try:
        written = write_pairs(Path(args.out), key_size=args.bits, force=args.force)
    except OSError as e:
        print(f"Error: {e}")
        sys.exit(1)

    for path in written:
        print(f"wrote {path}")


if __name__ == "__main__":
    main()
