import pytest

from code_graph.mapper import RelationshipMapper
from code_graph.models import EdgeKind, NodeKind, stable_node_id


def node_id(path, qualified, kind):
    return stable_node_id(path, qualified, kind)


def module_id(path):
    return stable_node_id(path, '', NodeKind.MODULE)


def edge_set(mapping):
    return {(e.source, e.target, e.kind) for e in mapping.edges}


def test_import_and_call_across_files_with_a_broken_file(map_repo):
    index, mapping = map_repo({
        'a.py': '''
            def helper():
                return 1
        ''',
        'b.py': '''
            def broken(:
                pass
        ''',
        'c.py': '''
            import a

            def main():
                return a.helper()
        ''',
    })

    assert [s.source_file.path for s in index.symbols] == ['a.py', 'c.py']
    assert edge_set(mapping) == {
        (module_id('c.py'), module_id('a.py'), EdgeKind.IMPORT),
        (node_id('c.py', 'main', NodeKind.FUNCTION), node_id('a.py', 'helper', NodeKind.FUNCTION), EdgeKind.CALL),
    }
    assert all(e.confidence == 1.0 and not e.inferred_by_ai for e in mapping.edges)
    assert mapping.ambiguous == ()


def test_same_module_name_in_another_language_is_not_a_candidate(map_repo):
    _, mapping = map_repo({
        'a.py': '''
            def helper():
                return 1
        ''',
        'a.js': 'export function helper() { return 2; }\n',
        'b.js': "import { helper } from './a';\nfunction run() { return helper(); }\n",
        'c.py': '''
            import a

            def main():
                return a.helper()
        ''',
    })

    assert edge_set(mapping) == {
        (module_id('c.py'), module_id('a.py'), EdgeKind.IMPORT),
        (node_id('c.py', 'main', NodeKind.FUNCTION), node_id('a.py', 'helper', NodeKind.FUNCTION), EdgeKind.CALL),
        (module_id('b.js'), module_id('a.js'), EdgeKind.IMPORT),
        (node_id('b.js', 'run', NodeKind.FUNCTION), node_id('a.js', 'helper', NodeKind.FUNCTION), EdgeKind.CALL),
    }
    assert mapping.ambiguous == ()


def test_from_import_binds_the_member(map_repo):
    _, mapping = map_repo({
        'pkg/__init__.py': '',
        'pkg/util.py': '''
            def helper():
                pass
        ''',
        'pkg/app.py': '''
            from .util import helper as h

            def run():
                h()
        ''',
    })
    assert edge_set(mapping) == {
        (module_id('pkg/app.py'), module_id('pkg/util.py'), EdgeKind.IMPORT),
        (node_id('pkg/app.py', 'run', NodeKind.FUNCTION),
         node_id('pkg/util.py', 'helper', NodeKind.FUNCTION), EdgeKind.CALL),
    }


def test_inheritance_and_inherited_method_call(map_repo):
    _, mapping = map_repo({
        'base.py': '''
            class Base:
                def run(self):
                    pass
        ''',
        'child.py': '''
            from base import Base

            class Child(Base):
                def go(self):
                    self.run()
        ''',
    })
    child = node_id('child.py', 'Child', NodeKind.CLASS)
    base = node_id('base.py', 'Base', NodeKind.CLASS)
    assert (child, base, EdgeKind.INHERITANCE) in edge_set(mapping)
    assert (node_id('child.py', 'Child.go', NodeKind.FUNCTION),
            node_id('base.py', 'Base.run', NodeKind.FUNCTION), EdgeKind.CALL) in edge_set(mapping)


def test_calling_a_class_is_composition(map_repo):
    _, mapping = map_repo({
        'm.py': '''
            class Thing:
                pass

            def build():
                return Thing()
        ''',
    })
    assert edge_set(mapping) == {
        (node_id('m.py', 'build', NodeKind.FUNCTION), node_id('m.py', 'Thing', NodeKind.CLASS),
         EdgeKind.COMPOSITION),
    }


def test_same_name_in_two_files_without_import_is_ambiguous(map_repo):
    _, mapping = map_repo({
        'x.py': 'def f1():\n    pass\n',
        'y.py': 'def f1():\n    pass\n',
        'z.py': 'def main():\n    f1()\n',
    })
    assert mapping.edges == ()
    assert len(mapping.ambiguous) == 1
    ambiguous = mapping.ambiguous[0]
    assert ambiguous.edge_kind == EdgeKind.CALL
    assert ambiguous.source_id == node_id('z.py', 'main', NodeKind.FUNCTION)
    assert set(ambiguous.candidates) == {node_id('x.py', 'f1', NodeKind.FUNCTION),
                                         node_id('y.py', 'f1', NodeKind.FUNCTION)}


def test_unresolvable_name_is_ambiguous_with_no_candidates(map_repo):
    _, mapping = map_repo({'z.py': 'def main():\n    nowhere()\n'})
    assert len(mapping.ambiguous) == 1
    assert mapping.ambiguous[0].candidates == ()


def test_external_and_builtin_references_produce_nothing(map_repo):
    _, mapping = map_repo({
        'm.py': '''
            import os

            def main():
                os.path.join('a', 'b')
                print(len([]))
        ''',
    })
    assert mapping.edges == ()
    assert mapping.ambiguous == ()
    assert mapping.external_references == 4


def test_unknown_receiver(map_repo):
    _, mapping = map_repo({
        'm.py': '''
            class A:
                def process(self):
                    pass

            class B:
                def process(self):
                    pass

            def run(obj):
                obj.process()
                obj.missing()
        ''',
    })
    assert len(mapping.ambiguous) == 1
    assert mapping.ambiguous[0].reference.target.expression == 'obj.process'
    assert len(mapping.ambiguous[0].candidates) == 2
    assert mapping.external_references == 1


def test_duplicate_references_collapse_into_one_weighted_edge(map_repo):
    _, mapping = map_repo({
        'a.py': 'def helper():\n    pass\n',
        'c.py': 'from a import helper\n\ndef main():\n    helper()\n    helper()\n',
    })
    calls = [e for e in mapping.edges if e.kind == EdgeKind.CALL]
    assert len(calls) == 1
    assert calls[0].weight == 2


def test_cyclic_imports_resolve(map_repo):
    _, mapping = map_repo({
        'a.py': 'import b\n\ndef fa():\n    return b.fb()\n',
        'b.py': 'import a\n\ndef fb():\n    return a.fa()\n',
    })
    assert edge_set(mapping) == {
        (module_id('a.py'), module_id('b.py'), EdgeKind.IMPORT),
        (module_id('b.py'), module_id('a.py'), EdgeKind.IMPORT),
        (node_id('a.py', 'fa', NodeKind.FUNCTION), node_id('b.py', 'fb', NodeKind.FUNCTION), EdgeKind.CALL),
        (node_id('b.py', 'fb', NodeKind.FUNCTION), node_id('a.py', 'fa', NodeKind.FUNCTION), EdgeKind.CALL),
    }


TIE_SOURCE = '''
class Thing:
    pass

def Thing():
    return 1

def use():
    return Thing()
'''


def test_tie_break_prefers_the_latest_preceding_declaration(map_repo):
    _, mapping = map_repo({'t.py': TIE_SOURCE})
    assert edge_set(mapping) == {
        (node_id('t.py', 'use', NodeKind.FUNCTION), node_id('t.py', 'Thing', NodeKind.FUNCTION), EdgeKind.CALL),
    }


def test_tie_break_can_defer_collisions(map_repo):
    _, mapping = map_repo({'t.py': TIE_SOURCE}, tie_break='ambiguous')
    assert mapping.edges == ()
    assert set(mapping.ambiguous[0].candidates) == {
        node_id('t.py', 'Thing', NodeKind.CLASS), node_id('t.py', 'Thing', NodeKind.FUNCTION)}


def test_unknown_tie_break_policy_is_rejected():
    with pytest.raises(ValueError):
        RelationshipMapper(tie_break='first')


def test_javascript_named_import(map_repo):
    _, mapping = map_repo({
        'util.js': 'export function helper() { return 1; }\n',
        'app.js': "import { helper } from './util';\nfunction main() { return helper(); }\n",
    })
    assert edge_set(mapping) == {
        (module_id('app.js'), module_id('util.js'), EdgeKind.IMPORT),
        (node_id('app.js', 'main', NodeKind.FUNCTION), node_id('util.js', 'helper', NodeKind.FUNCTION),
         EdgeKind.CALL),
    }


def test_java_inherited_method_from_same_package(map_repo):
    _, mapping = map_repo({
        'Base.java': 'package com.acme;\npublic class Base { public void start() {} }\n',
        'App.java': 'package com.acme;\npublic class App extends Base {\n  public void run() { start(); }\n}\n',
    })
    assert edge_set(mapping) == {
        (node_id('App.java', 'App', NodeKind.CLASS), node_id('Base.java', 'Base', NodeKind.CLASS),
         EdgeKind.INHERITANCE),
        (node_id('App.java', 'App.run', NodeKind.FUNCTION), node_id('Base.java', 'Base.start', NodeKind.FUNCTION),
         EdgeKind.CALL),
    }
