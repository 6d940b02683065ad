"""Tests for the heuristic Java parser."""

from pathlib import Path

from codecontext.java_parser import JavaParser, mask_source


def _by_name(record):
    return {d.name: d for d in record.definitions}


def test_parse_sample_class(sample_project_path: Path):
    path = sample_project_path / "java" / "com" / "example" / "util" / "StringUtils.java"
    record = JavaParser().parse_file(str(path), path.read_text())
    defs = _by_name(record)

    cls = defs["StringUtils"]
    assert cls.kind == "class"
    assert cls.is_exported
    assert (cls.start_line, cls.end_line) == (6, 15)
    assert cls.signature == "public class StringUtils"
    assert "String helpers." in cls.documentation

    reverse = defs["reverse"]
    assert reverse.kind == "method"
    assert reverse.parent == "StringUtils"
    assert reverse.signature == "String reverse(String value)"
    assert (reverse.start_line, reverse.end_line) == (12, 14)
    assert reverse.documentation == "/** Reverse a string. */"
    assert reverse.is_exported

    assert {d.name for d in record.exports} == {"StringUtils", "reverse"}
    assert record.parse_errors == []


def test_constructor_is_a_method(sample_project_path: Path):
    path = sample_project_path / "java" / "com" / "example" / "util" / "StringUtils.java"
    record = JavaParser().parse_file(str(path), path.read_text())
    constructors = [d for d in record.definitions if d.name == "StringUtils" and d.kind == "method"]

    assert len(constructors) == 1
    assert constructors[0].signature == "StringUtils()"
    assert not constructors[0].is_exported


def test_imports(sample_project_path: Path):
    path = sample_project_path / "java" / "com" / "example" / "Main.java"
    record = JavaParser().parse_file(str(path), path.read_text())

    first, second = record.imports
    assert first.from_module == "com.example.util.StringUtils"
    assert first.symbols == ["StringUtils"]
    assert first.kind == "named"
    assert second.from_module == "java.util.List"


def test_static_and_wildcard_imports():
    record = JavaParser().parse_file(
        "/virtual/A.java",
        "import static org.junit.Assert.assertEquals;\n"
        "import java.util.*;\n"
        "class A {}\n",
    )
    static, wildcard = record.imports

    assert static.from_module == "org.junit.Assert"
    assert static.symbols == ["assertEquals"]
    assert wildcard.kind == "namespace"
    assert wildcard.symbols == ["*"]
    assert wildcard.from_module == "java.util"


def test_braces_in_strings_and_comments_are_ignored():
    code = (
        "public class Braces {\n"
        "    // a stray { in a comment\n"
        "    public String open() {\n"
        "        return \"{\";\n"
        "    }\n"
        "\n"
        "    /* } */\n"
        "    char close() {\n"
        "        return '}';\n"
        "    }\n"
        "}\n"
    )
    record = JavaParser().parse_file("/virtual/Braces.java", code)
    defs = _by_name(record)

    assert defs["Braces"].end_line == 11
    assert defs["open"].end_line == 5
    assert defs["close"].end_line == 10
    assert not defs["close"].is_exported
    assert record.parse_errors == []


def test_nested_types_and_interfaces():
    code = (
        "public interface Shape {\n"
        "    double area();\n"
        "\n"
        "    class Unit implements Shape {\n"
        "        @Override\n"
        "        public double area() { return 1.0; }\n"
        "    }\n"
        "}\n"
    )
    record = JavaParser().parse_file("/virtual/Shape.java", code)
    shape_methods = [d for d in record.definitions if d.name == "area"]

    assert _by_name(record)["Shape"].kind == "interface"
    unit = _by_name(record)["Unit"]
    assert unit.scope == "class"
    assert unit.parent == "Shape"
    assert {m.parent for m in shape_methods} == {"Shape", "Unit"}
    abstract = next(m for m in shape_methods if m.parent == "Shape")
    assert abstract.start_line == abstract.end_line == 2


def test_statements_are_not_methods():
    code = (
        "class Runner {\n"
        "    void run() {\n"
        "        helper(1);\n"
        "        if (ready()) { go(); }\n"
        "    }\n"
        "}\n"
    )
    record = JavaParser().parse_file("/virtual/Runner.java", code)
    assert [d.name for d in record.definitions] == ["Runner", "run"]


def test_unbalanced_braces_reported():
    record = JavaParser().parse_file("/virtual/Bad.java", "class Bad {\n    void x() {\n}\n")
    assert record.parse_errors
    assert record.parse_errors[0].startswith("Unbalanced braces")


def test_mask_source_keeps_line_structure():
    code = 'String s = "a // b";\n/* one\ntwo */ int x;\n'
    masked = mask_source(code)
    assert masked.count("\n") == code.count("\n")
    assert len(masked) == len(code)
    assert "//" not in masked
    assert "int x;" in masked


def test_extract_symbols_from_line():
    symbols = JavaParser().extract_symbols_from_line(
        "String out = StringUtils.reverse(new StringBuilder(args[0]).toString());"
    )
    assert "reverse" in symbols
    assert "StringUtils" in symbols
    assert "StringBuilder" in symbols
    assert "new" not in symbols
