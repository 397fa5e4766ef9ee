"""
Binary image format for the stack VM.

Layout:
  Bytes 0-3:  Magic DE AD BE EF
  Bytes 4-N:  One little-endian 32-bit word per instruction

The instruction count is always padded to a multiple of 4 with nops.
Images may optionally be stored inside a zstd frame; decode() accepts both.
"""

import os
import struct
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from zstd import compress, decompress

from instructions import Instruction, Nop, Push, decode, encode, push_chars

MAGIC = b'\xde\xad\xbe\xef'
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'
COMPRESSION_LEVEL = 22

WORD_SIZE = 4
ALIGNMENT = 4  # instructions


@dataclass
class Image:
    """An assembled program ready to be written out."""
    code: List[Instruction] = field(default_factory=list)

    def padded(self) -> List[Instruction]:
        """Return the instruction stream padded with nops to a multiple of 4."""
        code = list(self.code)
        while len(code) % ALIGNMENT != 0:
            code.append(Nop())
        return code

    def encode(self, compressed: bool = False) -> bytes:
        """Encode image to bytes."""
        if not self.code:
            raise ValueError("No instructions to write")

        words = b''.join(struct.pack('<I', encode(op)) for op in self.padded())
        data = MAGIC + words

        if compressed:
            return compress(data, COMPRESSION_LEVEL)
        return data

    def write(self, path: str, compressed: bool = False) -> int:
        """Write the image to path and return the number of instructions written."""
        # Encode first so a failure never leaves a truncated file behind
        data = self.encode(compressed)
        existed = os.path.lexists(path)
        try:
            with open(path, 'wb') as f:
                f.write(data)
        except OSError:
            # Only clean up a file this call created
            if not existed and os.path.isfile(path):
                os.remove(path)
            raise
        return len(self.padded())

    @classmethod
    def decode(cls, data: bytes) -> 'Image':
        """Decode bytes (raw or zstd-wrapped) to an image."""
        if data[:4] == ZSTD_MAGIC:
            data = decompress(data)

        if len(data) < len(MAGIC):
            raise ValueError("Data too short for image header")
        if data[:4] != MAGIC:
            raise ValueError(f"Invalid magic bytes: {data[:4].hex()}")

        body = data[4:]
        if len(body) % WORD_SIZE:
            raise ValueError(f"Truncated instruction at offset {4 + len(body) - len(body) % WORD_SIZE}")

        image = cls()
        for (word,) in struct.iter_unpack('<I', body):
            image.code.append(decode(word))
        return image


def _string_comment(op: Push) -> str:
    """Show the characters carried by a stpush chunk, if it looks like one."""
    parts = push_chars(op)
    if parts['flag'] > 1:
        return ""
    chars = [parts['byte0'], parts['byte1'], parts['byte2']]
    while chars and chars[-1] == 0:
        chars.pop()
    if not chars or not all(32 <= c < 127 for c in chars):
        return ""
    text = ''.join(chr(c) for c in chars)
    return f'  ; "{text}"' + (" ..." if parts['flag'] else "")


def disassemble_words(data: bytes) -> str:
    """Disassemble a raw or zstd-wrapped image, tolerating unknown words."""
    if data[:4] == ZSTD_MAGIC:
        data = decompress(data)
    if data[:4] != MAGIC:
        raise ValueError(f"Invalid magic bytes: {data[:4].hex()}")

    body = data[4:]
    lines = [f"; {len(body) // WORD_SIZE} instructions", ""]

    for i, (word,) in enumerate(struct.iter_unpack('<I', body[:len(body) - len(body) % WORD_SIZE])):
        addr = f"0x{i * WORD_SIZE:04X}"
        try:
            op = decode(word)
        except ValueError:
            lines.append(f"{addr}: .word 0x{word:08X}")
            continue
        text = str(op)
        if isinstance(op, Push):
            text += _string_comment(op)
        lines.append(f"{addr}: {text}")

    return '\n'.join(lines)


def disassemble(image: Image) -> str:
    """Disassemble an image to human-readable format."""
    return disassemble_words(image.encode())


def main(argv: Optional[List[str]] = None):
    import argparse

    parser = argparse.ArgumentParser(description='Stack VM image disassembler')
    parser.add_argument('image', help='Binary image file')
    args = parser.parse_args(argv)

    try:
        with open(args.image, 'rb') as f:
            data = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.image}", file=sys.stderr)
        sys.exit(1)

    try:
        print(disassemble_words(data))
    except Exception as e:
        print(f"Error loading image: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
