import pytest

from assemble import Assembler, AssemblerError, LabelInfo, clean_line
from instructions import (
    BinaryArith, BinaryIf, Call, Debug, Dump, Dup, Exit, Goto, Input, Nop,
    Pop, Print, Push, Return, StInput, StPrint, Swap, UnaryArith, UnaryIf,
    Unknown, encode, expand_stpush,
)


def assemble(source, **kwargs):
    return Assembler(**kwargs).assemble(source)


def test_clean_line():
    assert clean_line("   exit 3   # done") == "exit 3"
    assert clean_line("# only a comment") == ""
    assert clean_line('stpush "a#b"  # trailing') == 'stpush "a#b"'
    assert clean_line('stpush "say \\"#\\""') == 'stpush "say \\"#\\""'
    assert clean_line('stpush "a\\\\"   # trailing comment') == 'stpush "a\\\\"'
    assert clean_line("push '#'  # hash") == "push '#'"
    assert clean_line("push '\"'  # quote") == "push '\"'"


def test_escaped_backslash_before_closing_quote():
    """An escaped backslash does not escape the quote after it."""
    code = assemble('stpush "a\\\\"   # trailing comment')
    assert code == expand_stpush('a\\\\') == [Push(0x5C61)]


def test_labels_record_line_and_memory_location():
    source = "\n".join([
        "start:",
        "    exit",
        "loop:          # the loop",
        '    stpush "abcd"',
        "",
        "end:",
        "    nop",
    ])
    assembler = Assembler()
    assembler.assemble(source)
    assert assembler.labels == {
        'start': LabelInfo(1, 0),
        'loop': LabelInfo(3, 4),
        'end': LabelInfo(6, 12),
    }
    assert assembler.warnings == []


def test_duplicate_label_keeps_first_binding():
    source = "a:\n    nop\na:\n    nop\n"
    assembler = Assembler()
    assembler.assemble(source)
    assert assembler.warnings == ["Duplicate label 'a' found on line 3."]
    assert assembler.labels['a'] == LabelInfo(1, 0)


def test_labels_are_case_sensitive():
    assembler = Assembler()
    assembler.assemble("Top:\n  nop\ntop:\n  nop")
    assert assembler.labels == {'Top': LabelInfo(1, 0), 'top': LabelInfo(3, 4)}
    assert assembler.warnings == []


@pytest.mark.parametrize("line, expected", [
    ("exit", Exit(0)),
    ("exit 7", Exit(7)),
    ("exit -1", Exit(-1)),
    ("swap", Swap(4, 0)),
    ("swap 8", Swap(8, 0)),
    ("swap 8 12", Swap(8, 12)),
    ("nop", Nop()),
    ("input", Input()),
    ("stinput", StInput(0xFFFFFF)),
    ("stinput 0x10", StInput(16)),
    ("stinput 0X10", StInput(16)),
    ("stinput 10", StInput(10)),
    ("debug", Debug(0)),
    ("debug 42", Debug(42)),
    ("debug 0x1F", Debug(31)),
    ("debug hex 1F", Debug(31)),
    ("debug HEX ff", Debug(255)),
    ("debug hex", Debug(0)),
    ("pop", Pop(4)),
    ("pop 8", Pop(8)),
    ("ADD", BinaryArith('add')),
    ("lsr", BinaryArith('lsr')),
    ("neg", UnaryArith('neg')),
    ("not", UnaryArith('not')),
    ("stprint", StPrint(0)),
    ("stprint 8", StPrint(8)),
    ("return", Return(0)),
    ("return 4", Return(4)),
    ("dup", Dup(0)),
    ("dup 4", Dup(4)),
    ("print", Print(0, 0)),
    ("printh 4", Print(4, 1)),
    ("printb", Print(0, 2)),
    ("printo 8", Print(8, 3)),
    ("dump", Dump()),
    ("push 65", Push(65)),
    ("push 0x41", Push(65)),
    ("push 'A'", Push(65)),
    ("push ' '", Push(32)),
    ("push '#'", Push(35)),
    ("push '#'  # hash character", Push(35)),
    ("call 8", Call(8)),
    ("goto -4", Goto(-4)),
    ("iflt 12", BinaryIf(2, 12)),
    ("ifpl -8", UnaryIf(3, -8)),
])
def test_single_line(line, expected):
    assert assemble(line) == [expected]


def test_branch_targets_are_pc_relative():
    source = "\n".join([
        "start:",
        "    nop",
        "    goto end",
        "    call start",
        "    ifeq start",
        "    ifnz end",
        "end:",
        "    exit",
    ])
    assert assemble(source) == [
        Nop(),
        Goto(16),
        Call(-8),
        BinaryIf(0, -12),
        UnaryIf(1, 4),
        Exit(0),
    ]


def test_forward_labels_count_stpush_expansion():
    source = "\n".join([
        "    goto after",
        '    stpush "Hello, World!\\n"',
        "after:",
        "    push after",
        "    exit",
    ])
    code = assemble(source)
    assert code[0] == Goto(24)
    assert code[1:6] == expand_stpush("Hello, World!\\n")
    assert code[6] == Push(24)


def test_escaped_stpush_keeps_labels_aligned():
    source = 'stpush "\\n\\n\\n\\n"\nhere:\ngoto here'
    code = assemble(source)
    assert len(code) == 3
    assert code[2] == Goto(0)


def test_stpush_with_comment_and_hash_in_literal():
    code = assemble('stpush "a#b"   # print it')
    assert code == [Push(0x622361)]


def test_empty_stpush_emits_nothing():
    with pytest.raises(AssemblerError, match="No instructions"):
        assemble('stpush ""')
    assert assemble('stpush ""\nexit') == [Exit(0)]


@pytest.mark.parametrize("source, message", [
    ("debug hex zz", "Invalid hex value for debug: zz"),
    ("exit abc", "Invalid decimal value for exit: abc"),
    ("swap 4 x", "Invalid decimal value for swap 'to': x"),
    ("dup 1.5", "Invalid decimal value for dup"),
    ("stinput 0xZZ", "Invalid hex value for stinput"),
    ("goto nowhere", "Undefined label: nowhere"),
    ("push nowhere", "Undefined label: nowhere"),
    ("call", "call requires 1 operand"),
    ("nop 1", "nop takes no operands"),
    ("exit 1 2", "exit takes at most 1 operand"),
    ("frobnicate", "Unknown instruction: frobnicate"),
])
def test_errors_abort_assembly(source, message):
    with pytest.raises(AssemblerError, match=message):
        assemble(source)


def test_error_reports_line_number():
    with pytest.raises(AssemblerError) as info:
        assemble("nop\n\n# comment\ndebug hex zz\nexit")
    assert info.value.line_num == 4
    assert info.value.line == "debug hex zz"
    assert str(info.value).startswith("Line 4: ")


def test_first_error_wins():
    with pytest.raises(AssemblerError) as info:
        assemble("exit x\nexit y")
    assert info.value.line_num == 1


def test_empty_program_is_an_error():
    with pytest.raises(AssemblerError, match="No instructions to assemble"):
        assemble("# nothing here\n\nlabel:\n")


def test_unknown_mnemonics_pass_through_when_allowed():
    source = "frobnicate 1 2\nhere:\ngoto here"
    code = assemble(source, allow_unknown=True)
    assert code == [Unknown("frobnicate 1 2"), Goto(0)]
    assert encode(code[0]) == 0


def test_assembler_is_reusable():
    assembler = Assembler()
    assembler.assemble("a:\nnop\na:\nexit")
    code = assembler.assemble("b:\nexit")
    assert code == [Exit(0)]
    assert assembler.labels == {'b': LabelInfo(1, 0)}
    assert assembler.warnings == []
