"""
Cross-file relationship resolution.

All declarations of the repository are first collected into one addressable
table (the declaration index); references are then resolved against it in a
flat second pass. Resolution never recurses through other references, so
cyclic and forward references need no special ordering beyond resolving
imports and inheritance before calls.
"""

import builtins
import logging
import posixpath
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from code_parser.models import DeclarationKind, FileSymbols, ReferenceKind, SymbolRecord

from .builder import deduplicate_edges
from .models import EdgeKind, GraphEdge, StaticProvenance, stable_node_id

logger = logging.getLogger(__name__)

TIE_BREAK_POLICIES = ('lexical_last', 'ambiguous')

SELF_NAMES = {
    'python': ('self', 'cls'),
    'javascript': ('this',),
    'typescript': ('this',),
    'java': ('this',),
}

# Imports only resolve to modules of the same family.
LANGUAGE_FAMILIES = {
    'python': 'python',
    'javascript': 'script',
    'typescript': 'script',
    'java': 'java',
}

# Unqualified names visible from method bodies through the class scope.
CLASS_SCOPE_VISIBLE = {'java'}

BUILTIN_NAMES = {
    'python': frozenset(dir(builtins)),
    'javascript': frozenset({
        'console', 'require', 'setTimeout', 'setInterval', 'clearTimeout', 'clearInterval',
        'Promise', 'Object', 'Array', 'String', 'Number', 'Boolean', 'JSON', 'Math', 'Date',
        'Error', 'TypeError', 'RangeError', 'Map', 'Set', 'WeakMap', 'WeakSet', 'Symbol',
        'RegExp', 'parseInt', 'parseFloat', 'isNaN', 'fetch', 'encodeURIComponent',
        'decodeURIComponent', 'structuredClone', 'queueMicrotask', 'super',
    }),
    'java': frozenset({
        'Object', 'String', 'StringBuilder', 'Integer', 'Long', 'Double', 'Float', 'Boolean',
        'Character', 'Byte', 'Short', 'Math', 'System', 'Thread', 'Runnable', 'Exception',
        'RuntimeException', 'IllegalArgumentException', 'IllegalStateException', 'Error',
        'Throwable', 'Iterable', 'Comparable', 'Enum', 'Record', 'super',
    }),
}
BUILTIN_NAMES['typescript'] = BUILTIN_NAMES['javascript']


class ResolutionAmbiguity(Exception):
    """A reference resolved to zero or several candidate declarations."""

    def __init__(self, reference: SymbolRecord, candidates: Sequence[str], edge_kind: EdgeKind):
        self.reference = reference
        self.candidates = tuple(dict.fromkeys(candidates))
        self.edge_kind = edge_kind
        super().__init__(f"{reference.file_path}:{reference.start_line}: "
                         f"'{reference.target.expression}' has {len(self.candidates)} candidates")


@dataclass(frozen=True)
class Declaration:
    """Arena entry: one declaration and its node id."""
    index: int
    node_id: str
    record: SymbolRecord
    module_name: str
    language: Optional[str]
    qualified_path: str
    parent: Optional[int]

    @property
    def kind(self) -> DeclarationKind:
        return self.record.declaration_kind

    @property
    def file_path(self) -> str:
        return self.record.file_path


@dataclass(frozen=True)
class AmbiguousReference:
    """A reference deferred to the inference gateway."""
    reference: SymbolRecord
    source_id: str
    edge_kind: EdgeKind
    candidates: Tuple[str, ...]


@dataclass(frozen=True)
class MappingResult:
    edges: Tuple[GraphEdge, ...]
    ambiguous: Tuple[AmbiguousReference, ...]
    external_references: int
    declarations: Tuple[Declaration, ...]


@dataclass(frozen=True)
class _Binding:
    """A name bound by an import in one file."""
    modules: Tuple[Declaration, ...]
    target: Optional[Declaration]
    member: Optional[str]

    @property
    def internal(self) -> bool:
        return bool(self.modules)


def qualify(*parts: str) -> str:
    return '.'.join(p for p in parts if p)


class DeclarationIndex:
    """Lookup tables over every declaration of the repository."""

    def __init__(self, files: Sequence[FileSymbols]):
        self.declarations: List[Declaration] = []
        self.by_qualified: Dict[str, List[Declaration]] = defaultdict(list)
        self.modules: Dict[str, List[Declaration]] = defaultdict(list)
        self.file_modules: Dict[str, Declaration] = {}
        self.in_file: Dict[Tuple[str, str], List[Declaration]] = defaultdict(list)
        self.top_level_by_name: Dict[str, List[Declaration]] = defaultdict(list)
        self.methods_by_name: Dict[str, List[Declaration]] = defaultdict(list)
        self.languages: Dict[str, Optional[str]] = {}

        for file_symbols in files:
            self._add_file(file_symbols)

    def _add_file(self, file_symbols: FileSymbols):
        path = file_symbols.source_file.path
        language = file_symbols.source_file.language
        self.languages[path] = language
        for record in file_symbols.declarations:
            if record.declaration_kind == DeclarationKind.MODULE:
                decl = self._append(record, file_symbols.module_name, language, '', None)
                self.file_modules[path] = decl
                self.modules[file_symbols.module_name].append(decl)
                continue
            in_file_name = record.qualified_name
            parent = self.enclosing(path, '.'.join(record.scope), record.start_line)
            decl = self._append(record, file_symbols.module_name, language, in_file_name,
                                parent.index if parent is not None else None)
            self.by_qualified[decl.qualified_path].append(decl)
            self.in_file[(path, in_file_name)].append(decl)
            if not record.scope:
                self.top_level_by_name[record.name].append(decl)
            elif parent is not None and parent.kind == DeclarationKind.CLASS \
                    and record.declaration_kind == DeclarationKind.FUNCTION:
                self.methods_by_name[record.name].append(decl)

    def _append(self, record: SymbolRecord, module_name: str, language: Optional[str],
                in_file_name: str, parent: Optional[int]) -> Declaration:
        kind = record.declaration_kind
        decl = Declaration(
            index=len(self.declarations),
            node_id=stable_node_id(record.file_path, in_file_name, kind),
            record=record,
            module_name=module_name,
            language=language,
            qualified_path=qualify(module_name, in_file_name),
            parent=parent,
        )
        self.declarations.append(decl)
        return decl

    def enclosing(self, path: str, in_file_name: str, line: int) -> Optional[Declaration]:
        """Innermost declaration named ``in_file_name`` in ``path`` containing ``line``."""
        if not in_file_name:
            return self.file_modules.get(path)
        matches = self.in_file.get((path, in_file_name), [])
        containing = [d for d in matches if d.record.start_line <= line <= d.record.end_line]
        if containing:
            return containing[-1]
        if matches:
            return matches[-1]
        return self.enclosing(path, in_file_name.rpartition('.')[0], line)

    def parent_of(self, decl: Declaration) -> Optional[Declaration]:
        return self.declarations[decl.parent] if decl.parent is not None else None

    def find_modules(self, name: str, dotted: bool = True, language: Optional[str] = None) -> List[Declaration]:
        """
        Exact module name, else a unique dotted-suffix match (``src.pkg.mod`` for ``pkg.mod``).

        When ``language`` is given, only modules of the same language family are candidates.
        """
        if not name:
            return []
        family = LANGUAGE_FAMILIES.get(language, language)

        def same_family(mods):
            if language is None:
                return list(mods)
            return [m for m in mods if LANGUAGE_FAMILIES.get(m.language, m.language) == family]

        exact = same_family(self.modules.get(name, ()))
        if exact or not dotted:
            return exact
        suffix = '.' + name
        return [m for key, mods in self.modules.items() if key.endswith(suffix) for m in same_family(mods)]

    def members(self, modules: Sequence[Declaration], member_path: str) -> List[Declaration]:
        found = []
        for module in dict.fromkeys(modules):
            found.extend(d for d in self.by_qualified.get(qualify(module.module_name, member_path), [])
                         if d.file_path == module.file_path)
        return found


class RelationshipMapper:
    """Resolves the complete symbol set of a repository into static edges and ambiguous references."""

    def __init__(self, tie_break: str = 'lexical_last'):
        """
        Initialize relationship mapper.

        Args:
            tie_break: Policy for same-scope naming collisions: ``lexical_last``
                prefers the most recently declared matching symbol preceding the
                reference (else the last one in the file); ``ambiguous`` defers
                the collision to inference.
        """
        if tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(f"Unknown tie_break policy '{tie_break}', expected one of {TIE_BREAK_POLICIES}")
        self.tie_break = tie_break

    def map(self, files: Sequence[FileSymbols]) -> MappingResult:
        """
        Produce edges for the whole repository.

        Args:
            files: Symbol batches of every ok/partial file

        Returns:
            MappingResult with deduplicated static edges and the ambiguous references
        """
        index = DeclarationIndex(files)
        state = _ResolutionState(index, self.tie_break)

        references = [(fs, ref) for fs in files for ref in fs.references]
        order = {ReferenceKind.IMPORT: 0, ReferenceKind.INHERITANCE: 1,
                 ReferenceKind.CALL: 2, ReferenceKind.INSTANTIATION: 2}
        references.sort(key=lambda item: order[item[1].target.kind])

        for file_symbols, ref in references:
            state.resolve(file_symbols, ref)

        edges = deduplicate_edges(state.edges)
        logger.info("Mapped %d static edges, %d ambiguous and %d external references",
                    len(edges), len(state.ambiguous), state.external)
        return MappingResult(edges=tuple(edges), ambiguous=tuple(state.ambiguous),
                             external_references=state.external,
                             declarations=tuple(index.declarations))


_NO_BINDING = object()


class _ResolutionState:
    """Mutable state of one mapping pass."""

    def __init__(self, index: DeclarationIndex, tie_break: str):
        self.index = index
        self.tie_break = tie_break
        self.bindings: Dict[str, Dict[str, _Binding]] = defaultdict(dict)
        self.star_modules: Dict[str, List[Declaration]] = defaultdict(list)
        self.bases: Dict[int, List[Declaration]] = defaultdict(list)
        self.edges: List[GraphEdge] = []
        self.ambiguous: List[AmbiguousReference] = []
        self.external = 0
        self.edge_kind = EdgeKind.CALL

    def resolve(self, file_symbols: FileSymbols, ref: SymbolRecord):
        kind = ref.target.kind
        if kind == ReferenceKind.IMPORT:
            source = self.index.file_modules[ref.file_path]
        else:
            source = self.index.enclosing(ref.file_path, '.'.join(ref.scope), ref.start_line)
        edge_kind = {
            ReferenceKind.IMPORT: EdgeKind.IMPORT,
            ReferenceKind.INHERITANCE: EdgeKind.INHERITANCE,
            ReferenceKind.INSTANTIATION: EdgeKind.COMPOSITION,
            ReferenceKind.CALL: EdgeKind.CALL,
        }[kind]
        self.edge_kind = edge_kind
        try:
            if kind == ReferenceKind.IMPORT:
                targets = self._resolve_import(file_symbols, ref)
            elif kind == ReferenceKind.INHERITANCE:
                targets = self._resolve_type(ref, source, edge_kind)
                for target in targets or ():
                    self.bases[source.index].append(target)
            elif kind == ReferenceKind.INSTANTIATION:
                targets = self._resolve_type(ref, source, edge_kind)
            else:
                targets = self._resolve_call(ref, source, edge_kind)
        except ResolutionAmbiguity as e:
            self.ambiguous.append(AmbiguousReference(reference=ref, source_id=source.node_id,
                                                     edge_kind=e.edge_kind, candidates=e.candidates))
            return

        if targets is None:
            self.external += 1
            return
        for target in targets:
            target_kind = edge_kind
            if kind == ReferenceKind.CALL and target.kind == DeclarationKind.CLASS:
                target_kind = EdgeKind.COMPOSITION
            self.edges.append(GraphEdge(source=source.node_id, target=target.node_id,
                                        kind=target_kind, provenance=StaticProvenance()))

    # imports

    def _resolve_import(self, file_symbols: FileSymbols, ref: SymbolRecord) -> Optional[List[Declaration]]:
        hint = ref.target
        language = file_symbols.source_file.language
        if language in ('javascript', 'typescript'):
            modules = self._script_modules(ref.file_path, hint.expression, language)
            member_path = hint.member if hint.member not in (None, 'default', '*') else None
        else:
            expression = self._absolute_module(file_symbols, hint.expression, hint.level)
            if hint.member and hint.member != '*':
                full = qualify(expression, hint.member)
                modules = self.index.find_modules(full, language=language)
                member_path = None
                if not modules:
                    modules = self.index.find_modules(expression, language=language) if expression else []
                    member_path = hint.member
            else:
                modules, member_path = self._split_module_path(expression, language)

        if not modules:
            self.bindings[ref.file_path][ref.name] = _Binding((), None, hint.member)
            return None

        target = None
        if member_path:
            members = self.index.members(modules, member_path)
            if len({d.node_id for d in members}) == 1:
                target = members[-1]

        if hint.member == '*':
            self.star_modules[ref.file_path].extend(modules)
        else:
            self.bindings[ref.file_path][ref.name] = _Binding(tuple(modules), target, member_path)

        if target is not None:
            return [self.index.file_modules[target.file_path]]
        distinct = {m.file_path for m in modules}
        if len(distinct) > 1 and hint.member != '*' and language != 'java':
            raise ResolutionAmbiguity(ref, [m.node_id for m in modules], EdgeKind.IMPORT)
        return list(modules)

    def _absolute_module(self, file_symbols: FileSymbols, expression: str, level: int) -> str:
        if level <= 0:
            return expression
        package = file_symbols.module_name.split('.') if file_symbols.module_name else []
        if not file_symbols.source_file.path.endswith('__init__.py'):
            package = package[:-1]
        if level > 1:
            package = package[:-(level - 1)] if level - 1 <= len(package) else []
        return qualify('.'.join(package), expression)

    def _split_module_path(self, expression: str,
                           language: Optional[str] = None) -> Tuple[List[Declaration], Optional[str]]:
        """Longest module prefix of a dotted import path, the rest is a member path."""
        parts = expression.split('.')
        for i in range(len(parts), 0, -1):
            modules = self.index.find_modules('.'.join(parts[:i]), language=language)
            if modules:
                return modules, '.'.join(parts[i:]) or None
        return [], None

    def _script_modules(self, importer: str, spec: str, language: Optional[str] = None) -> List[Declaration]:
        if spec.startswith('.'):
            base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), spec))
        else:
            base = spec
        base = posixpath.splitext(base)[0] if posixpath.splitext(base)[1] in ('.js', '.ts', '.jsx', '.tsx', '.mjs', '.cjs') else base
        for candidate in (base, f"{base}/index"):
            modules = self.index.find_modules(candidate, dotted=False, language=language)
            if modules:
                return modules
        return []

    # inheritance and instantiation

    def _resolve_type(self, ref: SymbolRecord, source, edge_kind: EdgeKind) -> Optional[List[Declaration]]:
        expression = ref.target.expression
        bound = self._through_binding(ref, expression, edge_kind)
        if bound is not _NO_BINDING:
            return bound
        if '.' not in expression:
            local = self._visible(ref, expression)
            if local is not None:
                return [local]
        name = expression.rsplit('.', 1)[-1]
        candidates = self._global_classes(name)
        if len({d.node_id for d in candidates}) == 1:
            return [candidates[-1]]
        if not candidates and self._is_builtin(ref, expression):
            return None
        raise ResolutionAmbiguity(ref, [d.node_id for d in candidates], edge_kind)

    # calls

    def _resolve_call(self, ref: SymbolRecord, source, edge_kind: EdgeKind) -> Optional[List[Declaration]]:
        expression = ref.target.expression
        parts = expression.split('.')
        language = self.index.languages.get(ref.file_path)

        if len(parts) > 1 and parts[0] in SELF_NAMES.get(language, ()) + ('super',):
            cls = self._enclosing_class(source)
            if cls is not None and len(parts) == 2:
                found = self._method_in_hierarchy(cls, parts[1], include_self=parts[0] != 'super')
                if found is not None:
                    return [found]
            return self._unknown_receiver(ref, parts[-1], edge_kind)

        bound = self._through_binding(ref, expression, edge_kind)
        if bound is not _NO_BINDING:
            return bound

        if len(parts) == 1:
            local = self._visible(ref, expression)
            if local is not None:
                return [local]
            if language in CLASS_SCOPE_VISIBLE:
                cls = self._enclosing_class(source)
                found = self._method_in_hierarchy(cls, expression) if cls is not None else None
                if found is not None:
                    return [found]
            candidates = self.index.top_level_by_name.get(expression, [])
            if len({d.node_id for d in candidates}) == 1 and candidates[-1].kind == DeclarationKind.CLASS:
                return [candidates[-1]]
            if not candidates and self._is_builtin(ref, expression):
                return None
            raise ResolutionAmbiguity(ref, [d.node_id for d in candidates], edge_kind)

        head = self._visible(ref, parts[0])
        if head is None and not self._is_builtin(ref, parts[0]):
            classes = self._global_classes(parts[0])
            head = classes[-1] if len({d.node_id for d in classes}) == 1 else None
        if head is not None and head.kind == DeclarationKind.CLASS:
            found = self._method_in_hierarchy(head, '.'.join(parts[1:]))
            if found is not None:
                return [found]
        return self._unknown_receiver(ref, parts[-1], edge_kind)

    def _unknown_receiver(self, ref: SymbolRecord, method: str, edge_kind: EdgeKind) -> Optional[List[Declaration]]:
        """Receiver type is unknown statically; repository methods of that name are only candidates."""
        candidates = self.index.methods_by_name.get(method, [])
        if not candidates:
            return None
        raise ResolutionAmbiguity(ref, [d.node_id for d in candidates], edge_kind)

    def _through_binding(self, ref: SymbolRecord, expression: str, edge_kind: EdgeKind):
        """
        Resolve via the longest import-bound prefix of ``expression``.

        Returns _NO_BINDING when no import applies, None when the binding is
        external to the repository, else the resolved declarations.
        """
        bindings = self.bindings.get(ref.file_path, {})
        parts = expression.split('.')
        for i in range(len(parts), 0, -1):
            binding = bindings.get('.'.join(parts[:i]))
            if binding is None:
                continue
            if not binding.internal:
                return None
            rest = '.'.join(parts[i:])
            if not rest:
                if binding.target is not None:
                    return [binding.target]
                if binding.member:
                    candidates = [d for d in self._all_named(binding.member)
                                  if d.module_name in {m.module_name for m in binding.modules}]
                else:
                    candidates = [d for m in binding.modules for d in self._module_top_level(m)]
                raise ResolutionAmbiguity(ref, [d.node_id for d in candidates], edge_kind)
            if binding.target is not None:
                if binding.target.kind == DeclarationKind.CLASS:
                    found = self._method_in_hierarchy(binding.target, rest)
                    matches = [found] if found is not None else []
                else:
                    matches = self.index.by_qualified.get(qualify(binding.target.qualified_path, rest), [])
            elif binding.member:
                # bound to a value, not a declaration: the receiver type is unknown
                return self._unknown_receiver(ref, parts[-1], edge_kind)
            else:
                matches = self.index.members(binding.modules, rest)
            chosen = self._choose(ref, matches)
            if chosen is not None:
                return [chosen]
            if len(parts) - i > 1:
                return self._unknown_receiver(ref, parts[-1], edge_kind)
            module_names = {m.module_name for m in binding.modules}
            candidates = [d for d in self._all_named(parts[-1]) if d.module_name in module_names]
            raise ResolutionAmbiguity(ref, [d.node_id for d in candidates], edge_kind)

        star = self.star_modules.get(ref.file_path)
        if star:
            chosen = self._choose(ref, self.index.members(star, expression))
            if chosen is not None:
                return [chosen]
        return _NO_BINDING

    def _visible(self, ref: SymbolRecord, name: str) -> Optional[Declaration]:
        """Look ``name`` up through the reference's enclosing scopes, innermost first."""
        language = self.index.languages.get(ref.file_path)
        scope = list(ref.scope)
        innermost = True
        while True:
            in_file_name = qualify('.'.join(scope), name)
            matches = self.index.in_file.get((ref.file_path, in_file_name), [])
            if matches:
                owner = self.index.enclosing(ref.file_path, '.'.join(scope), ref.start_line) if scope else None
                is_class_scope = owner is not None and owner.kind == DeclarationKind.CLASS
                if innermost or not is_class_scope or language in CLASS_SCOPE_VISIBLE:
                    return self._choose(ref, matches)
            if not scope:
                return None
            scope.pop()
            innermost = False

    def _choose(self, ref: SymbolRecord, matches: Sequence[Declaration]) -> Optional[Declaration]:
        """Apply the same-scope tie-break policy to colliding declarations."""
        if not matches:
            return None
        distinct = list({d.node_id: d for d in matches}.values())
        if len(distinct) == 1:
            return matches[-1]
        if self.tie_break == 'ambiguous':
            raise ResolutionAmbiguity(ref, [d.node_id for d in distinct], self.edge_kind)
        same_file = [d for d in matches if d.file_path == ref.file_path]
        preceding = [d for d in same_file if d.record.start_line <= ref.start_line]
        pool = preceding or same_file or list(matches)
        return max(pool, key=lambda d: (d.record.start_line, d.index))

    def _enclosing_class(self, decl) -> Optional[Declaration]:
        while decl is not None:
            if decl.kind == DeclarationKind.CLASS:
                return decl
            decl = self.index.parent_of(decl)
        return None

    def _method_in_hierarchy(self, cls: Declaration, name: str, include_self: bool = True) -> Optional[Declaration]:
        """Breadth-first search of ``cls`` and its statically resolved bases."""
        queue = [cls] if include_self else list(self.bases.get(cls.index, []))
        seen = set()
        while queue:
            current = queue.pop(0)
            if current.index in seen:
                continue
            seen.add(current.index)
            matches = self.index.by_qualified.get(qualify(current.qualified_path, name), [])
            if matches:
                return matches[-1]
            queue.extend(self.bases.get(current.index, []))
        return None

    def _module_top_level(self, module: Declaration) -> List[Declaration]:
        return [d for decls in self.index.top_level_by_name.values() for d in decls
                if d.file_path == module.file_path]

    def _all_named(self, name: str) -> List[Declaration]:
        return [d for d in self.index.declarations
                if d.kind != DeclarationKind.MODULE and d.record.name == name]

    def _global_classes(self, name: str) -> List[Declaration]:
        return [d for d in self._all_named(name) if d.kind == DeclarationKind.CLASS]

    def _is_builtin(self, ref: SymbolRecord, expression: str) -> bool:
        language = self.index.languages.get(ref.file_path)
        return expression.split('.')[0] in BUILTIN_NAMES.get(language, frozenset())
