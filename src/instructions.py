"""
Instruction encoding/decoding library for the stack VM.

Every instruction is one 32-bit word. The opcode lives in the top nibble:

  31-28  OPCODE
  27-0   Operand fields (opcode specific)

Opcode map:
  0x0  misc        27-24 subopcode (exit, swap, nop, input, debug, stinput)
  0x1  pop         27-0  unsigned offset
  0x2  binary op   27-24 subopcode (add .. lsr)
  0x3  unary op    27-24 subopcode (neg, not)
  0x4  stprint     15-4  offset>>2, 1-0 format
  0x5  call        27-0  PC-relative offset
  0x6  return      27-0  offset
  0x7  goto        27-0  PC-relative offset
  0x8  binary if   27-25 condition, 24-0 PC-relative offset
  0x9  unary if    27-26 condition, 25-0 PC-relative offset
  0xC  dup         27-0  offset>>2
  0xD  print       13-2  offset>>2, 1-0 format
  0xE  dump
  0xF  push        27-0  immediate

Encoding never fails: operands wider than their field are masked.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Union

# Opcodes
OP_MISC = 0x0
OP_POP = 0x1
OP_BINARY = 0x2
OP_UNARY = 0x3
OP_STPRINT = 0x4
OP_CALL = 0x5
OP_RETURN = 0x6
OP_GOTO = 0x7
OP_BINARY_IF = 0x8
OP_UNARY_IF = 0x9
OP_DUP = 0xC
OP_PRINT = 0xD
OP_DUMP = 0xE
OP_PUSH = 0xF

# Misc subopcodes
MISC_EXIT = 0x1
MISC_SWAP = 0x2
MISC_NOP = 0x4
MISC_INPUT = 0x5
MISC_DEBUG = 0xD
MISC_STINPUT = 0xF

BINARY_OPS = {
    'add': 0x1, 'sub': 0x2, 'mul': 0x3, 'div': 0x4,
    'rem': 0x5, 'and': 0x6, 'or': 0x7, 'xor': 0x8,
    'lsl': 0x9, 'asr': 0xA, 'lsr': 0xB,
}

UNARY_OPS = {
    'neg': 0x0,
    'not': 0x1,
}

BINARY_CONDITIONS = {
    'eq': 0, 'ne': 1, 'lt': 2, 'gt': 3, 'le': 4, 'ge': 5,
}

UNARY_CONDITIONS = {
    'ez': 0, 'nz': 1, 'mi': 2, 'pl': 3,
}

# Print formats, selected by mnemonic suffix (print, printh, printb, printo)
PRINT_FORMATS = {
    '': 0, 'h': 1, 'b': 2, 'o': 3,
}

BINARY_OP_NAMES = {v: k for k, v in BINARY_OPS.items()}
UNARY_OP_NAMES = {v: k for k, v in UNARY_OPS.items()}
BINARY_CONDITION_NAMES = {v: k for k, v in BINARY_CONDITIONS.items()}
UNARY_CONDITION_NAMES = {v: k for k, v in UNARY_CONDITIONS.items()}
PRINT_FORMAT_NAMES = {v: k for k, v in PRINT_FORMATS.items()}

STINPUT_ALL = 0x00FFFFFF

# Push immediates built by stpush: flag nibble over three character bytes
STRING_FLAG_LAST = 0x0
STRING_FLAG_MORE = 0x1

_ESCAPES = {'\\\\': '\\', '\\n': '\n', '\\"': '"'}
_ESCAPE_RE = re.compile(r'\\\\|\\n|\\"')


def _sign_extend(value: int, bits: int) -> int:
    """Interpret the low `bits` of value as a two's complement number."""
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


def _misc(sub: int, payload: int = 0) -> int:
    return (OP_MISC << 28) | ((sub & 0xF) << 24) | (payload & 0xFFFFFF)


@dataclass(frozen=True)
class Exit:
    code: int = 0

    def encode(self) -> int:
        return _misc(MISC_EXIT, self.code)

    def __str__(self) -> str:
        return f"exit {self.code}"


@dataclass(frozen=True)
class Swap:
    """Swap two stack slots given as byte offsets (stored as word offsets)."""
    from_offset: int = 4
    to_offset: int = 0

    def encode(self) -> int:
        encoded_from = (self.from_offset >> 2) & 0xFFF
        encoded_to = (self.to_offset >> 2) & 0xFFF
        return _misc(MISC_SWAP, (encoded_from << 12) | encoded_to)

    def __str__(self) -> str:
        return f"swap {self.from_offset} {self.to_offset}"


@dataclass(frozen=True)
class Nop:
    def encode(self) -> int:
        return _misc(MISC_NOP)

    def __str__(self) -> str:
        return "nop"


@dataclass(frozen=True)
class Input:
    def encode(self) -> int:
        return _misc(MISC_INPUT)

    def __str__(self) -> str:
        return "input"


@dataclass(frozen=True)
class Debug:
    value: int = 0

    def encode(self) -> int:
        return _misc(MISC_DEBUG, self.value)

    def __str__(self) -> str:
        return f"debug {self.value}"


@dataclass(frozen=True)
class StInput:
    max_chars: int = STINPUT_ALL

    def encode(self) -> int:
        return _misc(MISC_STINPUT, self.max_chars)

    def __str__(self) -> str:
        return f"stinput 0x{self.max_chars:X}"


@dataclass(frozen=True)
class Pop:
    offset: int = 4

    def encode(self) -> int:
        return (OP_POP << 28) | (self.offset & 0x0FFFFFFF)

    def __str__(self) -> str:
        return f"pop {self.offset}"


@dataclass(frozen=True)
class BinaryArith:
    """Two-operand arithmetic/logic op; operands come from the stack."""
    op: str

    def encode(self) -> int:
        return (OP_BINARY << 28) | ((BINARY_OPS[self.op] & 0xF) << 24)

    def __str__(self) -> str:
        return self.op


@dataclass(frozen=True)
class UnaryArith:
    op: str

    def encode(self) -> int:
        return (OP_UNARY << 28) | ((UNARY_OPS[self.op] & 0xF) << 24)

    def __str__(self) -> str:
        return self.op


@dataclass(frozen=True)
class StPrint:
    offset: int = 0
    fmt: int = 0

    def encode(self) -> int:
        encoded_offset = (self.offset >> 2) & 0xFFF
        return (OP_STPRINT << 28) | (encoded_offset << 4) | (self.fmt & 0x3)

    def __str__(self) -> str:
        return f"stprint {self.offset}"


@dataclass(frozen=True)
class Call:
    """Call with a PC-relative byte offset (multiple of 4)."""
    offset: int

    def encode(self) -> int:
        return (OP_CALL << 28) | (self.offset & 0x0FFFFFFF)

    def __str__(self) -> str:
        return f"call {self.offset:+d}"


@dataclass(frozen=True)
class Return:
    offset: int = 0

    def encode(self) -> int:
        return (OP_RETURN << 28) | (self.offset & 0x0FFFFFFF)

    def __str__(self) -> str:
        return f"return {self.offset}"


@dataclass(frozen=True)
class Goto:
    offset: int

    def encode(self) -> int:
        return (OP_GOTO << 28) | (self.offset & 0x0FFFFFFF)

    def __str__(self) -> str:
        return f"goto {self.offset:+d}"


@dataclass(frozen=True)
class BinaryIf:
    """Compare the top two stack values and branch on a 3-bit condition."""
    cond: int
    offset: int

    def encode(self) -> int:
        return (OP_BINARY_IF << 28) | ((self.cond & 0x7) << 25) | (self.offset & 0x1FFFFFF)

    def __str__(self) -> str:
        name = BINARY_CONDITION_NAMES.get(self.cond, f"c{self.cond}")
        return f"if{name} {self.offset:+d}"


@dataclass(frozen=True)
class UnaryIf:
    """Test the top stack value and branch on a 2-bit condition."""
    cond: int
    offset: int

    def encode(self) -> int:
        return (OP_UNARY_IF << 28) | ((self.cond & 0x3) << 26) | (self.offset & 0x3FFFFFF)

    def __str__(self) -> str:
        return f"if{UNARY_CONDITION_NAMES[self.cond & 0x3]} {self.offset:+d}"


@dataclass(frozen=True)
class Dup:
    offset: int = 0

    def encode(self) -> int:
        return (OP_DUP << 28) | ((self.offset >> 2) & 0x0FFFFFFF)

    def __str__(self) -> str:
        return f"dup {self.offset}"


@dataclass(frozen=True)
class Print:
    offset: int = 0
    fmt: int = 0

    def encode(self) -> int:
        encoded_offset = (self.offset >> 2) & 0xFFF
        return (OP_PRINT << 28) | (encoded_offset << 2) | (self.fmt & 0x3)

    def __str__(self) -> str:
        return f"print{PRINT_FORMAT_NAMES[self.fmt & 0x3]} {self.offset}"


@dataclass(frozen=True)
class Dump:
    def encode(self) -> int:
        return OP_DUMP << 28

    def __str__(self) -> str:
        return "dump"


@dataclass(frozen=True)
class Push:
    value: int

    def encode(self) -> int:
        return (OP_PUSH << 28) | (self.value & 0x0FFFFFFF)

    def __str__(self) -> str:
        return f"push 0x{self.value & 0x0FFFFFFF:07X}"


@dataclass(frozen=True)
class Unknown:
    """Placeholder for an unrecognised source line; encodes to zero."""
    text: str = ""

    def encode(self) -> int:
        return 0

    def __str__(self) -> str:
        return f".word 0x00000000  ; {self.text}" if self.text else ".word 0x00000000"


Instruction = Union[
    Exit, Swap, Nop, Input, Debug, StInput, Pop, BinaryArith, UnaryArith,
    StPrint, Call, Return, Goto, BinaryIf, UnaryIf, Dup, Print, Dump, Push,
    Unknown,
]


def encode(instruction: Instruction) -> int:
    """Encode an instruction to an unsigned 32-bit word."""
    return instruction.encode() & 0xFFFFFFFF


def _decode_misc(word: int) -> Instruction:
    sub = (word >> 24) & 0xF
    payload = word & 0xFFFFFF
    if word == 0:
        return Unknown()
    if sub == MISC_EXIT:
        return Exit(payload)
    if sub == MISC_SWAP:
        return Swap(((payload >> 12) & 0xFFF) << 2, (payload & 0xFFF) << 2)
    if sub == MISC_NOP:
        return Nop()
    if sub == MISC_INPUT:
        return Input()
    if sub == MISC_DEBUG:
        return Debug(payload)
    if sub == MISC_STINPUT:
        return StInput(payload)
    raise ValueError(f"Unknown misc subopcode 0x{sub:X} in word 0x{word:08X}")


def _decode_binary(word: int) -> Instruction:
    sub = (word >> 24) & 0xF
    if sub not in BINARY_OP_NAMES:
        raise ValueError(f"Unknown arithmetic subopcode 0x{sub:X} in word 0x{word:08X}")
    return BinaryArith(BINARY_OP_NAMES[sub])


def _decode_unary(word: int) -> Instruction:
    sub = (word >> 24) & 0xF
    if sub not in UNARY_OP_NAMES:
        raise ValueError(f"Unknown unary subopcode 0x{sub:X} in word 0x{word:08X}")
    return UnaryArith(UNARY_OP_NAMES[sub])


_DECODERS = {
    OP_MISC: _decode_misc,
    OP_POP: lambda w: Pop(w & 0x0FFFFFFF),
    OP_BINARY: _decode_binary,
    OP_UNARY: _decode_unary,
    OP_STPRINT: lambda w: StPrint(((w >> 4) & 0xFFF) << 2, w & 0x3),
    OP_CALL: lambda w: Call(_sign_extend(w, 28)),
    OP_RETURN: lambda w: Return(w & 0x0FFFFFFF),
    OP_GOTO: lambda w: Goto(_sign_extend(w, 28)),
    OP_BINARY_IF: lambda w: BinaryIf((w >> 25) & 0x7, _sign_extend(w, 25)),
    OP_UNARY_IF: lambda w: UnaryIf((w >> 26) & 0x3, _sign_extend(w, 26)),
    OP_DUP: lambda w: Dup((w & 0x0FFFFFFF) << 2),
    OP_PRINT: lambda w: Print(((w >> 2) & 0xFFF) << 2, w & 0x3),
    OP_DUMP: lambda w: Dump(),
    OP_PUSH: lambda w: Push(w & 0x0FFFFFFF),
}


def decode(word: int) -> Instruction:
    """Decode a 32-bit word back into an instruction."""
    word &= 0xFFFFFFFF
    opcode = (word >> 28) & 0xF
    decoder = _DECODERS.get(opcode)
    if decoder is None:
        raise ValueError(f"Unknown opcode 0x{opcode:X} in word 0x{word:08X}")
    return decoder(word)


def unescape(text: str) -> str:
    """Resolve the \\\\, \\n and \\" escapes of a string literal."""
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], text)


def string_chunk_count(literal: str) -> int:
    """Number of push instructions stpush needs for an unquoted literal."""
    return (len(unescape(literal)) + 2) // 3


def expand_stpush(literal: str) -> List[Push]:
    """Expand the stpush pseudo-instruction into push instructions.

    The literal is split into 3-character chunks. Chunks are emitted from the
    end of the string backwards so the VM pops the first chunk first; the
    chunk holding the end of the string carries the terminating flag.
    """
    text = unescape(literal)
    chunks = (len(text) + 2) // 3
    pushes = []

    for chunk in range(chunks - 1, -1, -1):
        part = text[chunk * 3:chunk * 3 + 3]
        b0, b1, b2 = (list(ord(c) & 0xFF for c in part) + [0, 0])[:3]
        flag = STRING_FLAG_LAST if chunk == chunks - 1 else STRING_FLAG_MORE
        immediate = ((flag & 0xF) << 24) | (b2 << 16) | (b1 << 8) | b0
        pushes.append(Push(immediate))

    return pushes


def push_chars(push: Push) -> Dict[str, int]:
    """Split a stpush-generated immediate into its flag and character bytes."""
    value = push.value & 0x0FFFFFFF
    return {
        'flag': (value >> 24) & 0xF,
        'byte0': value & 0xFF,
        'byte1': (value >> 8) & 0xFF,
        'byte2': (value >> 16) & 0xFF,
    }
