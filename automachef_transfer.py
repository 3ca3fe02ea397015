#!/usr/bin/env python3
# automachef_transfer.py
#
# Decrypt, encrypt and transfer platform and user locked Automachef save folders.
# Container format: "Ver:1\n" + 16 byte IV + base64(AES-256-CBC ciphertext, zero padded).
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import base64
import binascii
import hashlib
import os
import secrets
import sys
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


# =========================
# Constants
# =========================

VERSION_TAG = b"Ver:1\n"
VERSION_LEN = len(VERSION_TAG)
IV_LEN = 16
KEY_LEN = 32
BLOCK_SIZE = 16
HEADER_LEN = VERSION_LEN + IV_LEN

# Used for fresh encryptions only; transfers keep the IV of the source file.
DEFAULT_IV = b"0123456789ABCDEF"

PASSWORD_PREFIX = "hewasindeedandtaforthisimpl"
KDF_SALT = "the salty tears provide thy nourishment"
KDF_ITERATIONS = 2

# Twitch saves have no per-user id, the game uses this fixed one (the base64 text itself).
TWITCH_ACCOUNT_ID = base64.b64encode(b"ajksh54fdhj432h234jh").decode("ascii")

DECRYPTED_SUFFIX = "_decrypted"

BASE64_IGNORED = b" \t\r\n"


# =========================
# Enums / Data
# =========================

class ActionId(IntEnum):
    DECRYPT = 1
    ENCRYPT = 2
    TRANSFER = 3

    @staticmethod
    def from_cli(name: str) -> "ActionId":
        n = name.lower()
        if n == "decrypt":
            return ActionId.DECRYPT
        if n == "encrypt":
            return ActionId.ENCRYPT
        if n == "transfer":
            return ActionId.TRANSFER
        raise ValueError(f"Unsupported action: {name}")

    def to_cli(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Container:
    version: bytes
    iv: bytes
    payload: bytes  # base64 text, possibly line wrapped


@dataclass(frozen=True)
class DecryptAction:
    source_key: bytes


@dataclass(frozen=True)
class EncryptAction:
    target_key: bytes


@dataclass(frozen=True)
class TransferAction:
    source_key: bytes
    target_key: bytes


Action = Union[DecryptAction, EncryptAction, TransferAction]


@dataclass(frozen=True)
class SaveDir:
    dir: Path
    key: Optional[bytes] = None


@dataclass(frozen=True)
class FileOutcome:
    source: Path
    target: Path
    error: Optional["SaveToolError"] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =========================
# Errors
# =========================

class SaveToolError(Exception):
    pass


class CodecError(SaveToolError):
    pass


class MalformedContainerError(CodecError):
    pass


class InvalidEncodingError(CodecError):
    pass


class DecryptionError(CodecError):
    pass


class FileIOError(SaveToolError):
    pass


class MissingKeyError(SaveToolError):
    pass


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LEN:
        raise ValueError(f"Internal: key must be {KEY_LEN} bytes, got {len(key)}.")


def _check_iv(iv: bytes) -> None:
    if len(iv) != IV_LEN:
        raise ValueError(f"Internal: IV must be {IV_LEN} bytes, got {len(iv)}.")


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        pass


# =========================
# KDF / Keys
# =========================

def generate_password(account_id: str, prefix: str = PASSWORD_PREFIX) -> str:
    return prefix + account_id


def legacy_pbkdf1(
    password: str,
    salt: str = KDF_SALT,
    iterations: int = KDF_ITERATIONS,
    length: int = KEY_LEN,
) -> bytes:
    """
    Iterated SHA1 derivation used by the game (PBKDF1 with an extension loop):
    - h = SHA1^(iterations - 1)(password || salt)
    - output = SHA1(h) || SHA1("1" || h) || SHA1("2" || h) || ...
    - truncated to `length` bytes
    """
    if iterations < 1:
        raise ValueError("iterations must be >= 1")

    last_hash = (password + salt).encode("utf-8")
    for _ in range(iterations - 1):
        last_hash = sha1(last_hash)

    out = bytearray(sha1(last_hash))
    counter = 1
    while len(out) < length:
        out += sha1(str(counter).encode("ascii") + last_hash)
        counter += 1
    return bytes(out[:length])


def derive_key(
    account_id: str,
    *,
    prefix: str = PASSWORD_PREFIX,
    salt: str = KDF_SALT,
    iterations: int = KDF_ITERATIONS,
) -> bytes:
    return legacy_pbkdf1(generate_password(account_id, prefix), salt=salt, iterations=iterations)


# =========================
# Container encode/decode
# =========================

def parse_container(data: bytes) -> Container:
    if len(data) < HEADER_LEN:
        raise MalformedContainerError(
            f"Container too short: {len(data)} bytes (need at least {HEADER_LEN} for version and IV)."
        )
    return Container(
        version=bytes(data[:VERSION_LEN]),
        iv=bytes(data[VERSION_LEN:HEADER_LEN]),
        payload=bytes(data[HEADER_LEN:]),
    )


def build_container(iv: bytes, ciphertext: bytes, version: bytes = VERSION_TAG) -> bytes:
    _check_iv(iv)
    return b"".join([version, iv, base64.b64encode(ciphertext)])


def decode_payload(payload: bytes) -> bytes:
    compact = payload.translate(None, BASE64_IGNORED)
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise InvalidEncodingError(f"Invalid base64 in container: {ex}") from ex


def zero_pad(data: bytes, block_size: int = BLOCK_SIZE) -> bytes:
    rem = len(data) % block_size
    if rem == 0:
        return data
    return data + b"\x00" * (block_size - rem)


def zero_unpad(data: bytes, block_size: int = BLOCK_SIZE) -> bytes:
    if not data:
        return data
    last_start = max(len(data) - block_size, 0)
    last = data[last_start:].rstrip(b"\x00")
    return data[:last_start] + last


def get_cipher(key: bytes, iv: bytes) -> Cipher:
    _check_key(key)
    _check_iv(iv)
    return Cipher(algorithms.AES(key), modes.CBC(iv))


def decrypt_save(data: bytes, key: bytes) -> bytes:
    container = parse_container(data)
    ciphertext = decode_payload(container.payload)

    if len(ciphertext) % BLOCK_SIZE != 0:
        raise DecryptionError(
            f"Ciphertext length {len(ciphertext)} is not a multiple of the block size {BLOCK_SIZE}."
        )

    decryptor = get_cipher(key, container.iv).decryptor()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
    except ValueError as ex:
        raise DecryptionError(f"Cipher rejected ciphertext: {ex}") from ex

    # Zero padding can't tell padding from trailing NULs in the save itself.
    return zero_unpad(padded)


def encrypt_save(plaintext: bytes, key: bytes, iv: Optional[bytes] = None) -> bytes:
    if iv is None:
        iv = DEFAULT_IV
    encryptor = get_cipher(key, iv).encryptor()
    ciphertext = encryptor.update(zero_pad(plaintext)) + encryptor.finalize()
    return build_container(iv, ciphertext)


# =========================
# Actions
# =========================

def build_action(
    action_id: ActionId,
    source_key: Optional[bytes],
    target_key: Optional[bytes],
) -> Action:
    if action_id == ActionId.DECRYPT:
        if source_key is None:
            raise MissingKeyError("Decrypt requires a source key.")
        return DecryptAction(source_key=source_key)

    if action_id == ActionId.ENCRYPT:
        if target_key is None:
            raise MissingKeyError("Encrypt requires a target key.")
        return EncryptAction(target_key=target_key)

    if action_id == ActionId.TRANSFER:
        if source_key is None:
            raise MissingKeyError("Transfer requires a source key.")
        if target_key is None:
            raise MissingKeyError("Transfer requires a target key.")
        return TransferAction(source_key=source_key, target_key=target_key)

    raise ValueError(f"Unsupported action: {action_id!r}")


def convert_save(action: Action, data: bytes) -> bytes:
    if isinstance(action, DecryptAction):
        return decrypt_save(data, action.source_key)

    if isinstance(action, EncryptAction):
        return encrypt_save(data, action.target_key)

    if isinstance(action, TransferAction):
        # Reuse the source IV so the output is byte-compatible with earlier transfers.
        iv = parse_container(data).iv
        plaintext = decrypt_save(data, action.source_key)
        return encrypt_save(plaintext, action.target_key, iv=iv)

    raise TypeError(f"Unsupported action: {action!r}")


# =========================
# File IO
# =========================

def _create_tmp_file(parent_dir: Path, base_name: str) -> Tuple[Path, BinaryIO]:
    for _ in range(128):
        tmp_path = parent_dir / f".{base_name}.{secrets.token_hex(8)}.part"
        try:
            f = open(tmp_path, "xb")
        except FileExistsError:
            continue
        return tmp_path, f
    raise FileIOError(f"Failed to create a unique temporary file in {parent_dir} (too many collisions).")


def read_save(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as ex:
        raise FileIOError(f"Failed to read file: {path} ({ex})") from ex


def write_save(path: Path, data: bytes) -> None:
    parent = path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as ex:
        raise FileIOError(f"Failed to create dir: {parent} ({ex})") from ex

    tmp_path: Optional[Path] = None
    try:
        tmp_path, tmp_f = _create_tmp_file(parent, path.name)
        with tmp_f:
            tmp_f.write(data)
        os.replace(tmp_path, path)
    except OSError as ex:
        if tmp_path is not None:
            _unlink_best_effort(tmp_path)
        raise FileIOError(f"Failed to write file: {path} ({ex})") from ex


# =========================
# Tree transfer
# =========================

def iter_save_files(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        for name in sorted(filenames):
            fp = Path(dirpath) / name
            if fp.is_file():
                yield fp


def target_path_for(file: Path, source_root: Path, target_root: Path) -> Path:
    return target_root.joinpath(file.relative_to(source_root))


def process_file(action: Action, source_file: Path, target_file: Path) -> None:
    data = read_save(source_file)
    converted = convert_save(action, data)
    write_save(target_file, converted)


def _resolve_action(action: Union[ActionId, Action], source: SaveDir, target: SaveDir) -> Action:
    if isinstance(action, ActionId):
        return build_action(action, source.key, target.key)
    return action


def iter_transfer(
    action: Union[ActionId, Action],
    source: SaveDir,
    target: SaveDir,
) -> Iterator[FileOutcome]:
    resolved = _resolve_action(action, source, target)

    for fp in iter_save_files(source.dir):
        target_file = target_path_for(fp, source.dir, target.dir)
        try:
            process_file(resolved, fp, target_file)
        except SaveToolError as ex:
            yield FileOutcome(source=fp, target=target_file, error=ex)
        else:
            yield FileOutcome(source=fp, target=target_file)


def transfer_tree(
    action: Union[ActionId, Action],
    source: SaveDir,
    target: SaveDir,
) -> List[FileOutcome]:
    return list(iter_transfer(action, source, target))


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="automachef-transfer",
        description="Decrypt, encrypt and transfer platform and user locked Automachef save files.",
        formatter_class=argparse.RawTextHelpFormatter,
    )

    p.add_argument(
        "action",
        choices=[a.to_cli() for a in ActionId],
        help=(
            "decrypt:  write plaintext saves to <folder>_decrypted\n"
            "encrypt:  encrypt a plaintext folder for the given platform account\n"
            "transfer: re-encrypt a save folder for another platform account"
        ),
    )
    p.add_argument("input", metavar="SAVE_FOLDER", help="Save folder, named after the account id it belongs to.")

    g = p.add_mutually_exclusive_group()
    g.add_argument("--epic", metavar="ID", default=None, help="Target Epic account id.")
    g.add_argument("--steam", metavar="ID", default=None, help="Target Steam account id.")
    g.add_argument("--twitch", action="store_true", help="Target the Twitch version (fixed account id).")

    p.add_argument(
        "--force-overwrite",
        action="store_true",
        help="Write into the target folder even if it already exists.",
    )
    return p


def target_account_id(args: argparse.Namespace) -> Optional[str]:
    if args.epic is not None:
        return args.epic
    if args.steam is not None:
        return args.steam
    if args.twitch:
        return TWITCH_ACCOUNT_ID
    return None


def plan_dirs(
    action_id: ActionId,
    input_dir: Path,
    target_id: Optional[str],
) -> Tuple[SaveDir, SaveDir]:
    source_id = input_dir.name
    if source_id in ("", ".", ".."):
        raise SaveToolError(f"Cannot derive an account id from save folder: {input_dir}")

    source = SaveDir(dir=input_dir, key=derive_key(source_id))

    if action_id == ActionId.DECRYPT:
        target_name = source_id + DECRYPTED_SUFFIX
    else:
        if target_id is None:
            raise SaveToolError(f"{action_id.to_cli()} requires one of --epic, --steam or --twitch.")
        target_name = target_id

    target = SaveDir(
        dir=input_dir.with_name(target_name),
        key=derive_key(target_id) if target_id is not None else None,
    )
    return source, target


def check_dirs(source: SaveDir, target: SaveDir, force_overwrite: bool) -> None:
    if not source.dir.is_dir():
        raise SaveToolError(f"Save folder not found or not a directory: {source.dir}")
    if target.dir.resolve() == source.dir.resolve():
        raise SaveToolError(f"Target folder is the same as the save folder: {target.dir}")
    if target.dir.exists() and not force_overwrite:
        raise SaveToolError(
            f"Target directory {target.dir} already exists. "
            f"Run again with '--force-overwrite' to overwrite the contents."
        )


def report(outcomes: Iterable[FileOutcome]) -> Tuple[int, int]:
    total = 0
    failed = 0
    for outcome in outcomes:
        total += 1
        print(f"{outcome.source}...")
        if not outcome.ok:
            failed += 1
            eprint(f"{outcome.source}: {outcome.error}")
    return total, failed


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    action_id = ActionId.from_cli(args.action)
    source, target = plan_dirs(action_id, Path(args.input), target_account_id(args))
    check_dirs(source, target, bool(args.force_overwrite))

    total, failed = report(iter_transfer(action_id, source, target))
    print(f"Processed {total} file(s), {failed} failed.")
    return 1 if failed else 0


def cli() -> None:
    try:
        raise SystemExit(main())
    except SaveToolError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(2)
    except KeyboardInterrupt:
        eprint("Interrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    cli()
