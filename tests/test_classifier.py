import pytest

from code_parser.classifier import DEFAULT_LANGUAGE_MAP, FileClassifier


@pytest.fixture
def all_languages():
    return FileClassifier(DEFAULT_LANGUAGE_MAP, ['python', 'javascript', 'typescript', 'java'])


@pytest.mark.parametrize("path,expected", [
    ("pkg/mod.py", "python"),
    ("stubs/mod.pyi", "python"),
    ("web/app.JS", "javascript"),
    ("web/component.tsx", "typescript"),
    ("src/main/java/App.java", "java"),
    ("README.md", None),
    ("Makefile", None),
])
def test_classify_by_extension(all_languages, path, expected):
    assert all_languages.classify(path) == expected


def test_shebang_sniffing_for_extensionless_scripts(all_languages):
    assert all_languages.classify("bin/tool", b"#!/usr/bin/env python3\nprint('x')\n") == "python"
    assert all_languages.classify("bin/serve", b"#!/usr/bin/env node\n") == "javascript"
    assert all_languages.classify("bin/run", b"#!/bin/sh\necho hi\n") is None


def test_shebang_is_ignored_when_extension_is_present(all_languages):
    assert all_languages.classify("notes.txt", b"#!/usr/bin/env python3\n") is None


def test_language_without_parser_is_unsupported():
    classifier = FileClassifier(DEFAULT_LANGUAGE_MAP, ['python'])
    assert classifier.classify("app.js") is None
    assert classifier.classify("app.py") == "python"


def test_custom_registry():
    classifier = FileClassifier({'.PYW': 'python'}, ['python'])
    assert classifier.classify("gui.pyw") == "python"
    assert classifier.classify("gui.py") is None
