#!/usr/bin/env python3
"""
Stack VM Assembler

Usage: python assemble.py [infile=asm/input.asm] [outfile=output.bin]

Assembly language syntax:
    # comment
    label:
    mnemonic operand operand

Instructions:
    Misc:       exit [code], swap [from [to]], nop, input,
                debug [value] | debug hex <value>, stinput [max]
    Stack:      pop [offset], dup [offset], push <value|'c'|label>
    Arithmetic: add, sub, mul, div, rem, and, or, xor, lsl, asr, lsr,
                neg, not
    Control:    call <label>, return [offset], goto <label>,
                ifeq, ifne, iflt, ifgt, ifle, ifge <label>  (compare two)
                ifez, ifnz, ifmi, ifpl <label>              (test one)
    Output:     print[h|b|o] [offset], stprint [offset], dump
    Pseudo:     stpush "string"   (expands to one push per 3 characters)

Operands:
    123, -4     Decimal number
    0x1F        Hexadecimal number
    label       Label reference (branch targets become PC-relative)

Two passes: the first records every label's memory location, the second
encodes each line with all labels known.
"""

import sys
from dataclasses import dataclass
from typing import Dict, List, Optional

from executable import Image
from instructions import (
    BINARY_CONDITIONS, BINARY_OPS, PRINT_FORMATS, STINPUT_ALL,
    UNARY_CONDITIONS, UNARY_OPS,
    BinaryArith, BinaryIf, Call, Debug, Dump, Dup, Exit, Goto, Input,
    Instruction, Nop, Pop, Print, Push, Return, StInput, StPrint, Swap,
    UnaryArith, UnaryIf, Unknown, expand_stpush, string_chunk_count,
)

DEFAULT_INPUT = 'asm/input.asm'
DEFAULT_OUTPUT = 'output.bin'

WORD_SIZE = 4


class AssemblerError(Exception):
    """Assembler error with line information."""
    def __init__(self, message: str, line_num: int = 0, line: str = ""):
        self.message = message
        self.line_num = line_num
        self.line = line
        super().__init__(f"Line {line_num}: {message}\n  {line}")


@dataclass(frozen=True)
class LabelInfo:
    """Where a label was declared and the memory location it names."""
    line_number: int
    memory_location: int


def clean_line(line: str) -> str:
    """Strip whitespace and a trailing '#' comment (quotes respected)."""
    quote = None
    escaped = False
    for i, c in enumerate(line):
        if quote:
            if escaped:
                escaped = False
            elif c == '\\':
                escaped = True
            elif c == quote:
                quote = None
        elif c in ('"', "'"):
            quote = c
        elif c == '#':
            line = line[:i]
            break
    return line.strip()


def is_label(line: str) -> bool:
    return line.endswith(':')


def string_operand(line: str, mnemonic: str) -> str:
    """Return the text after the mnemonic, with surrounding quotes removed."""
    parameter = line[len(mnemonic):].strip()
    if len(parameter) >= 2 and parameter.startswith('"') and parameter.endswith('"'):
        parameter = parameter[1:-1]
    return parameter


def instruction_count(line: str) -> int:
    """Number of machine instructions a cleaned source line expands to."""
    tokens = line.split()
    if not tokens:
        return 0
    if tokens[0].lower() == 'stpush':
        return string_chunk_count(string_operand(line, tokens[0]))
    return 1


class Assembler:
    """Two-pass assembler producing an instruction stream."""

    def __init__(self, allow_unknown: bool = False):
        self.labels: Dict[str, LabelInfo] = {}
        self.code: List[Instruction] = []
        self.warnings: List[str] = []
        self.line_num = 0
        self.current_line = ""
        self.allow_unknown = allow_unknown

    def error(self, message: str):
        """Raise an assembler error."""
        raise AssemblerError(message, self.line_num, self.current_line)

    def warn(self, message: str):
        self.warnings.append(message)

    def current_addr(self) -> int:
        """Memory location of the next instruction to be emitted."""
        return len(self.code) * WORD_SIZE

    # Pass 1

    def build_labels(self, lines: List[str]) -> Dict[str, LabelInfo]:
        """Record label locations by counting the instructions before them."""
        mem_location = 0

        for i, raw in enumerate(lines, 1):
            line = clean_line(raw)
            if not line:
                continue

            if is_label(line):
                name = line[:-1].strip()
                if name in self.labels:
                    self.warn(f"Duplicate label '{name}' found on line {i}.")
                else:
                    self.labels[name] = LabelInfo(i, mem_location)
            else:
                mem_location += instruction_count(line) * WORD_SIZE

        return self.labels

    # Operand parsing

    def parse_number(self, token: str, what: str, base: int = 10) -> int:
        """Parse a decimal number, or hexadecimal when prefixed with 0x."""
        if token.lstrip('+-')[:2].lower() == '0x':
            base = 16
        try:
            return int(token, base)
        except ValueError:
            kind = 'hex' if base == 16 else 'decimal'
            self.error(f"Invalid {kind} value for {what}: {token}")

    def parse_target(self, token: str) -> int:
        """Resolve a branch target to a PC-relative byte offset."""
        if token.lstrip('+-')[:1].isdigit():
            return self.parse_number(token, 'branch offset')
        if token not in self.labels:
            self.error(f"Undefined label: {token}")
        return self.labels[token].memory_location - self.current_addr()

    def parse_value(self, token: str) -> int:
        """Parse a push operand: number or label address."""
        if token.lstrip('+-')[:1].isdigit():
            return self.parse_number(token, 'push')
        if token not in self.labels:
            self.error(f"Undefined label: {token}")
        return self.labels[token].memory_location

    def check_operands(self, mnemonic: str, operands: List[str], most: int, least: int = 0):
        if len(operands) < least:
            self.error(f"{mnemonic} requires {least} operand{'s' if least > 1 else ''}")
        if len(operands) > most:
            if most == 0:
                self.error(f"{mnemonic} takes no operands")
            self.error(f"{mnemonic} takes at most {most} operand{'s' if most > 1 else ''}")

    def optional_number(self, mnemonic: str, operands: List[str], default: int) -> int:
        self.check_operands(mnemonic, operands, 1)
        if operands:
            return self.parse_number(operands[0], mnemonic)
        return default

    # Pass 2

    def emit(self, instruction: Instruction):
        self.code.append(instruction)

    def assemble_stpush(self, line: str, mnemonic: str):
        for push in expand_stpush(string_operand(line, mnemonic)):
            self.emit(push)

    def assemble_swap(self, operands: List[str]):
        """Assemble swap instruction: swap [from=4] [to=0]"""
        self.check_operands('swap', operands, 2)
        src = self.parse_number(operands[0], "swap 'from'") if len(operands) > 0 else 4
        dst = self.parse_number(operands[1], "swap 'to'") if len(operands) > 1 else 0
        self.emit(Swap(src, dst))

    def assemble_debug(self, operands: List[str]):
        """Assemble debug instruction: debug [value] or debug hex <value>"""
        self.check_operands('debug', operands, 2)
        value = 0
        if operands and operands[0].lower() == 'hex':
            if len(operands) > 1:
                value = self.parse_number(operands[1], 'debug', base=16)
        elif len(operands) > 1:
            self.error("debug takes at most 1 operand unless 'hex' is given")
        elif operands:
            value = self.parse_number(operands[0], 'debug')
        self.emit(Debug(value))

    def assemble_print(self, mnemonic: str, operands: List[str]):
        """Assemble print[h|b|o] [offset]"""
        fmt = PRINT_FORMATS[mnemonic[len('print'):]]
        self.emit(Print(self.optional_number(mnemonic, operands, 0), fmt))

    def assemble_branch(self, mnemonic: str, operands: List[str]):
        """Assemble call, goto and the if<cond> branches."""
        self.check_operands(mnemonic, operands, 1, least=1)
        offset = self.parse_target(operands[0])

        if mnemonic == 'call':
            self.emit(Call(offset))
        elif mnemonic == 'goto':
            self.emit(Goto(offset))
        elif mnemonic[2:] in BINARY_CONDITIONS:
            self.emit(BinaryIf(BINARY_CONDITIONS[mnemonic[2:]], offset))
        else:
            self.emit(UnaryIf(UNARY_CONDITIONS[mnemonic[2:]], offset))

    def assemble_push(self, operand: str):
        """Assemble push instruction: push <number|'c'|label>"""
        # Character literals may hold whitespace, so work on the raw operand text
        if len(operand) == 3 and operand[0] == operand[2] == "'":
            self.emit(Push(ord(operand[1])))
            return
        operands = operand.split()
        self.check_operands('push', operands, 1, least=1)
        self.emit(Push(self.parse_value(operands[0])))

    def assemble_line(self, line: str):
        """Assemble a single line."""
        line = clean_line(line)
        if not line or is_label(line):
            return

        tokens = line.split()
        mnemonic = tokens[0].lower()
        operands = tokens[1:]

        if mnemonic == 'stpush':
            self.assemble_stpush(line, tokens[0])
        elif mnemonic == 'exit':
            self.emit(Exit(self.optional_number(mnemonic, operands, 0)))
        elif mnemonic == 'swap':
            self.assemble_swap(operands)
        elif mnemonic == 'nop':
            self.check_operands(mnemonic, operands, 0)
            self.emit(Nop())
        elif mnemonic == 'input':
            self.check_operands(mnemonic, operands, 0)
            self.emit(Input())
        elif mnemonic == 'stinput':
            self.emit(StInput(self.optional_number(mnemonic, operands, STINPUT_ALL)))
        elif mnemonic == 'debug':
            self.assemble_debug(operands)
        elif mnemonic == 'pop':
            self.emit(Pop(self.optional_number(mnemonic, operands, 4)))
        elif mnemonic in BINARY_OPS:
            self.check_operands(mnemonic, operands, 0)
            self.emit(BinaryArith(mnemonic))
        elif mnemonic in UNARY_OPS:
            self.check_operands(mnemonic, operands, 0)
            self.emit(UnaryArith(mnemonic))
        elif mnemonic == 'stprint':
            self.emit(StPrint(self.optional_number(mnemonic, operands, 0)))
        elif mnemonic in ('call', 'goto'):
            self.assemble_branch(mnemonic, operands)
        elif mnemonic.startswith('if') and (mnemonic[2:] in BINARY_CONDITIONS or mnemonic[2:] in UNARY_CONDITIONS):
            self.assemble_branch(mnemonic, operands)
        elif mnemonic == 'return':
            self.emit(Return(self.optional_number(mnemonic, operands, 0)))
        elif mnemonic == 'dup':
            self.emit(Dup(self.optional_number(mnemonic, operands, 0)))
        elif mnemonic.startswith('print') and mnemonic[len('print'):] in PRINT_FORMATS:
            self.assemble_print(mnemonic, operands)
        elif mnemonic == 'dump':
            self.check_operands(mnemonic, operands, 0)
            self.emit(Dump())
        elif mnemonic == 'push':
            self.assemble_push(line[len(tokens[0]):].strip())
        elif self.allow_unknown:
            self.emit(Unknown(line))
        else:
            self.error(f"Unknown instruction: {mnemonic}")

    def assemble(self, source: str) -> List[Instruction]:
        """Assemble source code into an instruction stream."""
        self.labels = {}
        self.code = []
        self.warnings = []

        lines = source.split('\n')
        self.build_labels(lines)

        for i, line in enumerate(lines, 1):
            self.line_num = i
            self.current_line = line
            try:
                self.assemble_line(line)
            except AssemblerError:
                raise
            except Exception as e:
                raise AssemblerError(str(e), i, line)

        if not self.code:
            raise AssemblerError("No instructions to assemble")

        return self.code


def main(argv: Optional[List[str]] = None):
    import argparse

    parser = argparse.ArgumentParser(description='Stack VM Assembler')
    parser.add_argument('infile', nargs='?', default=DEFAULT_INPUT, help='Input assembly file')
    parser.add_argument('outfile', nargs='?', default=DEFAULT_OUTPUT, help='Output binary file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print label addresses after assembly')
    parser.add_argument('--allow-unknown', action='store_true',
                        help='Encode unknown mnemonics as zero words instead of failing')
    parser.add_argument('--compress', action='store_true', help='Write a zstd-compressed image')

    args = parser.parse_args(argv)

    # Read source file
    try:
        with open(args.infile, 'r', encoding='utf-8') as f:
            source = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.infile}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    assembler = Assembler(allow_unknown=args.allow_unknown)
    try:
        code = assembler.assemble(source)
    except AssemblerError as e:
        for warning in assembler.warnings:
            print(f"Warning: {warning}", file=sys.stderr)
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    for warning in assembler.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    if args.verbose:
        print("Labels Recorded:")
        for name, info in assembler.labels.items():
            print(f"Label: {name} - Source Line: {info.line_number}, Memory Location: {info.memory_location}")

    if args.dump_labels:
        for name, info in sorted(assembler.labels.items(), key=lambda kv: kv[1].memory_location):
            print(f"{name}: 0x{info.memory_location:04X}")

    image = Image(code)

    # Write output
    try:
        count = image.write(args.outfile, compressed=args.compress)
        print(f"Assembly successful. {count} instructions written to {args.outfile}")
    except (OSError, ValueError) as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
