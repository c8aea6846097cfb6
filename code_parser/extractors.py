"""
Symbol extraction: walks a file's syntax tree and produces its declarations
and references. Targets are recorded as written; resolving them to graph
nodes happens later, across the whole repository.
"""

import ast as python_ast
import re
from pathlib import PurePosixPath
from typing import List, Optional

from .models import (
    DeclarationKind, FileSymbols, ParsedTree, ReferenceKind, SourceFile,
    SymbolKind, SymbolRecord, TargetHint,
)

SIMPLE_EXPRESSION = re.compile(r'^[A-Za-z_$][\w$]*(\.[A-Za-z_$][\w$]*)*$')


def python_module_name(file_path: str) -> str:
    """``pkg/sub/mod.py`` -> ``pkg.sub.mod``; package ``__init__`` files name the package."""
    parts = list(PurePosixPath(file_path).with_suffix('').parts)
    if parts and parts[-1] == '__init__':
        parts = parts[:-1]
    return '.'.join(parts)


def script_module_name(file_path: str) -> str:
    """JavaScript/TypeScript modules are named by their path without extension."""
    return str(PurePosixPath(file_path).with_suffix(''))


def dotted_name(node) -> Optional[str]:
    """Render ``a.b.c`` for Name/Attribute chains, None for anything else."""
    if isinstance(node, python_ast.Name):
        return node.id
    if isinstance(node, python_ast.Attribute):
        base = dotted_name(node.value)
        return f"{base}.{node.attr}" if base else None
    return None


class _RecordBuilder:
    """Shared bookkeeping for building SymbolRecords with a scope stack."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self.scope: List[str] = []
        self.records: List[SymbolRecord] = []

    def declare(self, name: str, kind: DeclarationKind, start_line: int, end_line: int,
                has_docstring: bool = False):
        self.records.append(SymbolRecord(
            kind=SymbolKind.DECLARATION, name=name, scope=tuple(self.scope),
            file_path=self.file_path, start_line=start_line, end_line=end_line,
            declaration_kind=kind, has_docstring=has_docstring,
        ))

    def reference(self, name: str, ref_kind: ReferenceKind, expression: str,
                  start_line: int, end_line: int, member: Optional[str] = None, level: int = 0):
        self.records.append(SymbolRecord(
            kind=SymbolKind.REFERENCE, name=name, scope=tuple(self.scope),
            file_path=self.file_path, start_line=start_line, end_line=end_line,
            target=TargetHint(kind=ref_kind, expression=expression, member=member, level=level),
        ))


class PythonSymbolVisitor(python_ast.NodeVisitor):
    """Collects declarations and references from a Python AST in source order."""

    def __init__(self, file_path: str):
        self.builder = _RecordBuilder(file_path)

    @property
    def records(self) -> List[SymbolRecord]:
        return self.builder.records

    def visit_ClassDef(self, node: python_ast.ClassDef):
        for decorator in node.decorator_list:
            self.visit(decorator)
        for keyword in node.keywords:
            self.visit(keyword.value)
        self.builder.declare(node.name, DeclarationKind.CLASS, node.lineno,
                             node.end_lineno or node.lineno,
                             python_ast.get_docstring(node) is not None)
        self.builder.scope.append(node.name)
        for base in node.bases:
            expression = dotted_name(base)
            if expression:
                self.builder.reference(expression, ReferenceKind.INHERITANCE, expression,
                                       base.lineno, base.end_lineno or base.lineno)
            else:
                self.visit(base)
        for stmt in node.body:
            self.visit(stmt)
        self.builder.scope.pop()

    def visit_FunctionDef(self, node):
        for decorator in node.decorator_list:
            self.visit(decorator)
        self.visit(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        self.builder.declare(node.name, DeclarationKind.FUNCTION, node.lineno,
                             node.end_lineno or node.lineno,
                             python_ast.get_docstring(node) is not None)
        self.builder.scope.append(node.name)
        for stmt in node.body:
            self.visit(stmt)
        self.builder.scope.pop()

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Import(self, node: python_ast.Import):
        for alias in node.names:
            self.builder.reference(alias.asname or alias.name, ReferenceKind.IMPORT, alias.name,
                                   node.lineno, node.end_lineno or node.lineno)

    def visit_ImportFrom(self, node: python_ast.ImportFrom):
        module = node.module or ''
        for alias in node.names:
            self.builder.reference(alias.asname or alias.name, ReferenceKind.IMPORT, module,
                                   node.lineno, node.end_lineno or node.lineno,
                                   member=alias.name, level=node.level or 0)

    def visit_Call(self, node: python_ast.Call):
        expression = dotted_name(node.func)
        if expression:
            self.builder.reference(expression, ReferenceKind.CALL, expression,
                                   node.lineno, node.end_lineno or node.lineno)
        self.generic_visit(node)


class _TreeSitterWalker:
    """Base class for Tree-sitter walkers; subclasses handle one language family."""

    def __init__(self, file_path: str, tree: ParsedTree):
        self.builder = _RecordBuilder(file_path)
        self.tree = tree

    @property
    def records(self) -> List[SymbolRecord]:
        return self.builder.records

    def text(self, node) -> str:
        """Extract text from a node. Tree-sitter offsets are byte offsets."""
        if node is None:
            return ''
        return self.tree.source[node.start_byte:node.end_byte].decode('utf-8', errors='replace').strip()

    @staticmethod
    def lines(node):
        return node.start_point[0] + 1, node.end_point[0] + 1

    def simple_expression(self, node) -> Optional[str]:
        """Return the node text when it is a plain dotted name, else None."""
        expression = re.sub(r'\s+', '', self.text(node)).replace('?.', '.')
        return expression if SIMPLE_EXPRESSION.match(expression) else None

    def walk(self, node):
        handler = getattr(self, f"on_{node.type}", None)
        if handler is not None:
            handler(node)
        else:
            self.walk_children(node)

    def walk_children(self, node, skip=()):
        for child in node.children:
            if child in skip:
                continue
            self.walk(child)

    def declare_scope(self, node, name_node, kind: DeclarationKind, body_nodes=None, before_body=None):
        """Declare ``node`` and walk its body inside the new scope."""
        name = self.text(name_node)
        if not name:
            self.walk_children(node)
            return
        start, end = self.lines(node)
        self.builder.declare(name, kind, start, end, self._has_doc_comment(node))
        self.builder.scope.append(name)
        if before_body is not None:
            before_body()
        for child in (body_nodes if body_nodes is not None else node.children):
            if child is None or child == name_node:
                continue
            self.walk(child)
        self.builder.scope.pop()

    @staticmethod
    def _has_doc_comment(node) -> bool:
        previous = node.prev_named_sibling
        return previous is not None and previous.type in ('comment', 'block_comment') \
            and previous.end_point[0] + 1 >= node.start_point[0]

    def add_reference(self, node, ref_kind: ReferenceKind, expression: str, **kwargs):
        start, end = self.lines(node)
        self.builder.reference(kwargs.pop('name', expression), ref_kind, expression, start, end, **kwargs)


class JavaScriptWalker(_TreeSitterWalker):
    """Walker for JavaScript and TypeScript trees."""

    FUNCTION_VALUES = ('arrow_function', 'function_expression', 'function', 'generator_function')
    HERITAGE_NAMES = ('identifier', 'type_identifier', 'member_expression', 'nested_type_identifier')

    def on_class_declaration(self, node):
        heritage = [c for c in node.children if c.type == 'class_heritage']
        body = node.child_by_field_name('body')
        self.declare_scope(node, node.child_by_field_name('name'), DeclarationKind.CLASS,
                           body_nodes=[body] if body is not None else [],
                           before_body=lambda: [self._heritage(h) for h in heritage])

    on_class = on_class_declaration
    on_abstract_class_declaration = on_class_declaration

    def on_interface_declaration(self, node):
        clauses = [c for c in node.children if c.type in ('extends_type_clause', 'extends_clause')]
        body = node.child_by_field_name('body')
        self.declare_scope(node, node.child_by_field_name('name'), DeclarationKind.CLASS,
                           body_nodes=[body] if body is not None else [],
                           before_body=lambda: [self._heritage(c) for c in clauses])

    def on_function_declaration(self, node):
        self.declare_scope(node, node.child_by_field_name('name'), DeclarationKind.FUNCTION)

    on_generator_function_declaration = on_function_declaration
    on_method_definition = on_function_declaration

    def on_variable_declarator(self, node):
        name_node = node.child_by_field_name('name')
        value = node.child_by_field_name('value')
        if value is not None and name_node is not None and name_node.type == 'identifier':
            if value.type in self.FUNCTION_VALUES:
                start, end = self.lines(node)
                name = self.text(name_node)
                self.builder.declare(name, DeclarationKind.FUNCTION, start, end,
                                     self._has_doc_comment(node.parent or node))
                self.builder.scope.append(name)
                self.walk(value)
                self.builder.scope.pop()
                return
            spec = self._require_spec(value)
            if spec is not None:
                self.add_reference(node, ReferenceKind.IMPORT, spec, name=self.text(name_node))
                return
        self.walk_children(node)

    def on_import_statement(self, node):
        source = node.child_by_field_name('source')
        spec = self._string_value(source)
        if spec is None:
            return
        clause = next((c for c in node.children if c.type == 'import_clause'), None)
        if clause is None:
            self.add_reference(node, ReferenceKind.IMPORT, spec, name=spec)
            return
        for child in clause.children:
            if child.type == 'identifier':
                self.add_reference(node, ReferenceKind.IMPORT, spec, name=self.text(child), member='default')
            elif child.type == 'namespace_import':
                alias = next((c for c in child.children if c.type == 'identifier'), None)
                self.add_reference(node, ReferenceKind.IMPORT, spec, name=self.text(alias) or spec)
            elif child.type == 'named_imports':
                for specifier in child.children:
                    if specifier.type != 'import_specifier':
                        continue
                    imported = self.text(specifier.child_by_field_name('name'))
                    alias = self.text(specifier.child_by_field_name('alias')) or imported
                    self.add_reference(node, ReferenceKind.IMPORT, spec, name=alias, member=imported)

    def on_call_expression(self, node):
        function = node.child_by_field_name('function')
        spec = self._require_spec(node)
        if spec is not None:
            self.add_reference(node, ReferenceKind.IMPORT, spec, name=spec)
            return
        if function is not None and function.type in ('identifier', 'member_expression'):
            expression = self.simple_expression(function)
            if expression:
                self.add_reference(node, ReferenceKind.CALL, expression)
        self.walk_children(node)

    def on_new_expression(self, node):
        constructor = node.child_by_field_name('constructor')
        if constructor is not None:
            expression = self.simple_expression(constructor)
            if expression:
                self.add_reference(node, ReferenceKind.INSTANTIATION, expression)
        self.walk_children(node, skip=(constructor,))

    def _heritage(self, node):
        if node.type in self.HERITAGE_NAMES:
            expression = self.simple_expression(node)
            if expression:
                self.add_reference(node, ReferenceKind.INHERITANCE, expression)
            return
        if node.type == 'type_arguments':
            return
        for child in node.named_children:
            self._heritage(child)

    def _require_spec(self, node) -> Optional[str]:
        if node.type != 'call_expression':
            return None
        function = node.child_by_field_name('function')
        if function is None or function.type != 'identifier' or self.text(function) != 'require':
            return None
        arguments = node.child_by_field_name('arguments')
        first = arguments.named_children[0] if arguments is not None and arguments.named_children else None
        return self._string_value(first)

    def _string_value(self, node) -> Optional[str]:
        if node is None or node.type not in ('string', 'template_string'):
            return None
        return self.text(node).strip('\'"`') or None


class JavaWalker(_TreeSitterWalker):
    """Walker for Java trees."""

    TYPE_DECLARATIONS = ('class_declaration', 'interface_declaration', 'enum_declaration',
                         'record_declaration', 'annotation_type_declaration')

    def package_name(self) -> str:
        for child in self.tree.root.children:
            if child.type == 'package_declaration':
                name = next((c for c in child.named_children
                             if c.type in ('scoped_identifier', 'identifier')), None)
                return self.text(name)
        return ''

    def on_package_declaration(self, node):
        pass

    def on_import_declaration(self, node):
        name = next((c for c in node.named_children if c.type in ('scoped_identifier', 'identifier')), None)
        if name is None:
            return
        path = self.text(name)
        if any(c.type == 'asterisk' for c in node.children):
            self.add_reference(node, ReferenceKind.IMPORT, path, name=path, member='*')
        else:
            self.add_reference(node, ReferenceKind.IMPORT, path, name=path.rsplit('.', 1)[-1])

    def on_class_declaration(self, node):
        heritage = [c for c in node.children
                    if c.type in ('superclass', 'super_interfaces', 'extends_interfaces')]
        body = node.child_by_field_name('body')
        self.declare_scope(node, node.child_by_field_name('name'), DeclarationKind.CLASS,
                           body_nodes=[body] if body is not None else [],
                           before_body=lambda: [self._heritage(h) for h in heritage])

    on_interface_declaration = on_class_declaration
    on_enum_declaration = on_class_declaration
    on_record_declaration = on_class_declaration
    on_annotation_type_declaration = on_class_declaration

    def on_method_declaration(self, node):
        self.declare_scope(node, node.child_by_field_name('name'), DeclarationKind.FUNCTION)

    on_constructor_declaration = on_method_declaration

    def on_method_invocation(self, node):
        name = self.text(node.child_by_field_name('name'))
        obj = node.child_by_field_name('object')
        if obj is None:
            expression = name
        else:
            receiver = self.simple_expression(obj)
            expression = f"{receiver}.{name}" if receiver else None
        if expression:
            self.add_reference(node, ReferenceKind.CALL, expression)
        self.walk_children(node)

    def on_object_creation_expression(self, node):
        type_node = self._base_type(node.child_by_field_name('type'))
        expression = self.simple_expression(type_node) if type_node is not None else None
        if expression:
            self.add_reference(node, ReferenceKind.INSTANTIATION, expression)
        self.walk_children(node)

    def _heritage(self, node):
        if node.type in ('type_identifier', 'scoped_type_identifier', 'generic_type'):
            base = self._base_type(node)
            expression = self.simple_expression(base) if base is not None else None
            if expression:
                self.add_reference(node, ReferenceKind.INHERITANCE, expression)
            return
        for child in node.named_children:
            self._heritage(child)

    @staticmethod
    def _base_type(node):
        """Strip type arguments: ``List<String>`` -> ``List``."""
        if node is not None and node.type == 'generic_type':
            return node.named_children[0] if node.named_children else None
        return node


class SymbolExtractor:
    """Produces the ordered SymbolRecords for one parsed file."""

    def extract(self, source_file: SourceFile, tree: ParsedTree) -> FileSymbols:
        """
        Extract declarations and references from a full or partial tree.

        Args:
            source_file: Recorded file (status ok or partial)
            tree: Syntax tree handle from the parser dispatcher

        Returns:
            FileSymbols whose first record is the module declaration of the file
        """
        if tree.language == 'python':
            visitor = PythonSymbolVisitor(source_file.path)
            visitor.visit(tree.root)
            module_name = python_module_name(source_file.path)
            records = visitor.records
            has_doc = python_ast.get_docstring(tree.root) is not None
        elif tree.language == 'java':
            walker = JavaWalker(source_file.path, tree)
            walker.walk(tree.root)
            module_name = walker.package_name()
            records = walker.records
            has_doc = False
        else:
            walker = JavaScriptWalker(source_file.path, tree)
            walker.walk(tree.root)
            module_name = script_module_name(source_file.path)
            records = walker.records
            has_doc = False

        module_record = SymbolRecord(
            kind=SymbolKind.DECLARATION, name=module_name, scope=(),
            file_path=source_file.path, start_line=1, end_line=max(source_file.line_count, 1),
            declaration_kind=DeclarationKind.MODULE, has_docstring=has_doc,
        )
        return FileSymbols(source_file=source_file, module_name=module_name,
                           symbols=(module_record,) + tuple(records))
