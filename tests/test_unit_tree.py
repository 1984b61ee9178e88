import uuid

import pytest
from sqlalchemy import event

from personnel.services.unit_tree import descendant_unit_ids, unit_label, would_create_cycle


@pytest.fixture
def tree(make_unit):
    """
    root
    +-- a
    |   +-- a1
    |   +-- a2
    |       +-- a2x
    +-- b
    """
    root = make_unit("ROOT")
    a = make_unit("A", parent=root)
    b = make_unit("B", parent=root)
    a1 = make_unit("A1", parent=a)
    a2 = make_unit("A2", parent=a)
    a2x = make_unit("A2X", parent=a2)
    return {"root": root, "a": a, "b": b, "a1": a1, "a2": a2, "a2x": a2x}


@pytest.fixture
def count_selects(engine):
    statements = []

    def _before(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT"):
            statements.append(statement)

    event.listen(engine, "before_cursor_execute", _before)
    yield statements
    event.remove(engine, "before_cursor_execute", _before)


def test_root_includes_whole_subtree(db, tree):
    ids = descendant_unit_ids(db, tree["root"].id)
    assert ids == {u.id for u in tree.values()}


def test_inner_node_excludes_siblings_and_ancestors(db, tree):
    ids = descendant_unit_ids(db, tree["a"].id)
    assert ids == {tree["a"].id, tree["a1"].id, tree["a2"].id, tree["a2x"].id}
    assert tree["b"].id not in ids
    assert tree["root"].id not in ids


def test_leaf_yields_itself(db, tree):
    assert descendant_unit_ids(db, tree["b"].id) == {tree["b"].id}


def test_unknown_root_yields_only_root(db, tree):
    ghost = uuid.uuid4()
    assert descendant_unit_ids(db, ghost) == {ghost}


def test_accepts_string_ids(db, tree):
    assert descendant_unit_ids(db, str(tree["a2"].id)) == {tree["a2"].id, tree["a2x"].id}


def test_one_query_per_level(db, tree, count_selects):
    root_id = tree["root"].id
    count_selects.clear()
    descendant_unit_ids(db, root_id)
    # levels below root: {a, b}, {a1, a2}, {a2x}, then the empty frontier check
    assert len(count_selects) == 4


def test_terminates_on_cycle(db, tree):
    root = tree["root"]
    root.parent_id = tree["a2x"].id
    db.commit()
    ids = descendant_unit_ids(db, tree["a"].id)
    assert ids == {u.id for u in tree.values()}


def test_would_create_cycle(db, tree):
    assert would_create_cycle(db, tree["a"].id, tree["a2x"].id)
    assert would_create_cycle(db, tree["a"].id, tree["a"].id)
    assert not would_create_cycle(db, tree["a"].id, tree["b"].id)
    assert not would_create_cycle(db, tree["a2"].id, None)


def test_unit_label(tree):
    assert unit_label(tree["a"]) == f"A - {tree['a'].name}"
    assert unit_label(None) is None
