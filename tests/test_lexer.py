import pytest

from lexer import DarkParseError, Lexer


def kinds(source):
    return [(t.type, t.value) for t in Lexer(source, "<test>").tokenize()]


def test_instructions_and_keywords_are_case_insensitive():
    assert kinds("PUSH True\nPrintN VOID") == [
        ("INSTRUCTION", "push"),
        ("BOOL", "true"),
        ("NEWLINE", "\n"),
        ("INSTRUCTION", "printn"),
        ("VOID", "void"),
        ("EOF", ""),
    ]


def test_identifiers_keep_their_case():
    assert kinds("set Count 1")[1] == ("IDENT", "Count")


def test_numbers():
    assert kinds("push -12")[1] == ("NUMBER", "-12")
    assert kinds("push 3.25")[1] == ("FLOAT", "3.25")
    assert kinds("push -0.5")[1] == ("FLOAT", "-0.5")


def test_number_followed_by_letters_is_rejected():
    with pytest.raises(DarkParseError, match="Invalid number format"):
        Lexer("push 12abc", "<test>").tokenize()


def test_strings_use_either_quote():
    assert kinds("print 'it\"s'")[1] == ("STRING", 'it"s')
    assert kinds('print "a b"')[1] == ("STRING", "a b")


def test_unterminated_string():
    with pytest.raises(DarkParseError, match="Unterminated string"):
        Lexer('print "abc\nprint 1', "<test>").tokenize()


def test_comments_are_skipped():
    source = "push 1 -- trailing\n-! block\n spanning lines !- pop"
    assert kinds(source) == [
        ("INSTRUCTION", "push"),
        ("NUMBER", "1"),
        ("NEWLINE", "\n"),
        ("INSTRUCTION", "pop"),
        ("EOF", ""),
    ]


def test_block_comment_tracks_lines():
    tokens = Lexer("-! a\nb !-\npop", "<test>").tokenize()
    assert tokens[1].type == "INSTRUCTION"
    assert tokens[1].line == 3


def test_unterminated_block_comment():
    with pytest.raises(DarkParseError, match="Unterminated block comment"):
        Lexer("-! never closed", "<test>").tokenize()


def test_semicolon_separates_statements():
    assert [t.type for t in Lexer("pop;pop", "<test>").tokenize()] == ["INSTRUCTION", "NEWLINE", "INSTRUCTION", "EOF"]


def test_labels():
    assert kinds("@main x")[:2] == [("LABEL", "main"), ("IDENT", "x")]
    with pytest.raises(DarkParseError, match="reserved"):
        Lexer("@push", "<test>").tokenize()
    with pytest.raises(DarkParseError, match="Invalid label name"):
        Lexer("@ 1", "<test>").tokenize()


def test_unexpected_character_reports_position():
    with pytest.raises(DarkParseError, match="<test>:2:5"):
        Lexer("pop\npop $", "<test>").tokenize()
