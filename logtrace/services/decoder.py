"""Reader for the on-device encrypted log container.

A container is a run of blocks, each framed as::

    0x01 | length (uint32, big-endian) | AES-128-CBC ciphertext | [0x00]

Every decrypted block holds a compressed chunk of JSONL text (gzip, zlib or
raw deflate). Buffers without the framing signature are treated as plain
UTF-8 text.
"""
import gzip
import logging
import struct
import zlib
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from logtrace.core.config import settings
from logtrace.core.errors import DecodeError

logger = logging.getLogger(__name__)

HEADER_BYTE = 0x01
TAIL_BYTE = 0x00
FRAME_HEADER_SIZE = 5
AES_BLOCK_BITS = 128
ENCODE_BLOCK_BYTES = 16 * 1024
ENCODE_COMPRESS_LEVEL = 6


@dataclass
class DecodeResult:
    text: str
    encrypted: bool
    blocks_total: int = 0
    blocks_succeeded: int = 0
    blocks_failed: int = 0


def _key_iv() -> tuple[bytes, bytes]:
    return settings.LOGAN_DECRYPT_KEY.encode("utf-8"), settings.LOGAN_DECRYPT_IV.encode("utf-8")


def is_encrypted(buffer: bytes) -> bool:
    if len(buffer) < 6:
        return False
    if buffer[0] != HEADER_BYTE:
        return False
    (length,) = struct.unpack(">I", buffer[1:5])
    if length == 0 or length > len(buffer) - FRAME_HEADER_SIZE:
        return False
    head = buffer[:10].decode("utf-8", errors="replace")
    return not (head.startswith("{") or head.startswith("["))


def _decrypt_block(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def _decompress(data: bytes) -> bytes:
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error):
        pass
    try:
        return zlib.decompress(data)
    except zlib.error:
        return zlib.decompress(data, -zlib.MAX_WBITS)


def decrypt_container(buffer: bytes) -> DecodeResult:
    key, iv = _key_iv()
    lines: list[str] = []
    total = succeeded = failed = 0
    offset = 0
    size = len(buffer)

    while offset < size:
        if buffer[offset] != HEADER_BYTE:
            offset += 1
            continue
        if offset + FRAME_HEADER_SIZE > size:
            break

        (length,) = struct.unpack(">I", buffer[offset + 1:offset + FRAME_HEADER_SIZE])
        if length == 0:
            offset += 1
            continue

        start = offset + FRAME_HEADER_SIZE
        end = start + length
        if end > size:
            break

        total += 1
        try:
            plain = _decompress(_decrypt_block(buffer[start:end], key, iv))
            text = plain.decode("utf-8", errors="replace")
            lines.extend(line for line in text.splitlines() if line.strip())
            succeeded += 1
        except (ValueError, zlib.error) as e:
            # Corrupted block; keep going with the rest of the file
            logger.debug("Container block at offset %d failed: %s", offset, e)
            failed += 1

        offset = end
        if offset < size and buffer[offset] == TAIL_BYTE:
            offset += 1

    return DecodeResult(
        text="\n".join(lines),
        encrypted=True,
        blocks_total=total,
        blocks_succeeded=succeeded,
        blocks_failed=failed,
    )


def decode_buffer(buffer: bytes) -> DecodeResult:
    """Turn an uploaded buffer into newline-delimited text.

    Raises DecodeError when the buffer is framed as a container but no block
    could be decrypted and decompressed.
    """
    if not is_encrypted(buffer):
        return DecodeResult(text=buffer.decode("utf-8", errors="replace"), encrypted=False)

    result = decrypt_container(buffer)
    if result.blocks_total == 0:
        raise DecodeError("Encrypted container has no readable blocks")
    if result.blocks_succeeded == 0:
        raise DecodeError(
            f"Failed to decrypt all {result.blocks_total} container blocks",
            blocks_total=result.blocks_total,
            blocks_failed=result.blocks_failed,
        )
    if result.blocks_failed:
        logger.warning(
            "Partial container decrypt: %d of %d blocks failed",
            result.blocks_failed, result.blocks_total,
        )
    return result


def _encrypt_block(plain: bytes, key: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(plain) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _chunk_lines(text: str, block_bytes: int) -> list[str]:
    chunks: list[str] = []
    current: list[str] = []
    current_size = 0
    for line in (line for line in text.splitlines() if line.strip()):
        line_size = len(line.encode("utf-8")) + 1
        if current and current_size + line_size > block_bytes:
            chunks.append("\n".join(current))
            current, current_size = [], 0
        current.append(line)
        current_size += line_size
    if current:
        chunks.append("\n".join(current))
    return chunks


def encode_text(text: str, block_bytes: int = ENCODE_BLOCK_BYTES) -> bytes:
    """Build a container holding ``text``; blank lines are not preserved."""
    key, iv = _key_iv()
    out = bytearray()
    for chunk in _chunk_lines(text, block_bytes):
        compressed = zlib.compress(chunk.encode("utf-8"), ENCODE_COMPRESS_LEVEL)
        ciphertext = _encrypt_block(compressed, key, iv)
        out.append(HEADER_BYTE)
        out += struct.pack(">I", len(ciphertext))
        out += ciphertext
        out.append(TAIL_BYTE)
    return bytes(out)
