from __future__ import annotations

import pytest

from cortex.core.errors import HasDescendants, InvalidInput, NotFound
from cortex.state.tree import CheckpointTree
from cortex.state.types import Checkpoint
from cortex.utils.time_utils import utc_now


def node(checkpoint_id: int, parent_id: int | None, count: int = 0, session_id: str = "s1") -> Checkpoint:
    return Checkpoint(
        id=checkpoint_id,
        session_id=session_id,
        parent_id=parent_id,
        message_count=count,
        checksum=f"sum-{checkpoint_id}",
        created_at=utc_now(),
    )


def build_tree() -> CheckpointTree:
    # 1 -> 2 -> 4
    #   -> 3
    return CheckpointTree([node(4, 2, 4), node(1, None, 0), node(3, 1, 2), node(2, 1, 2)])


def test_tree_ancestors_and_children():
    tree = build_tree()

    assert len(tree) == 4
    assert [item.id for item in tree.ancestors(4)] == [1, 2, 4]
    assert tree.children(1) == [2, 3]
    assert tree.is_leaf(3)
    assert not tree.is_leaf(2)
    assert tree.is_ancestor(1, 4)
    assert not tree.is_ancestor(3, 4)
    assert tree.get(1).is_root


def test_tree_rejects_unknown_parent_and_duplicates():
    tree = build_tree()

    with pytest.raises(NotFound):
        tree.add(node(9, 42))
    with pytest.raises(InvalidInput):
        tree.add(node(2, 1))
    with pytest.raises(InvalidInput):
        tree.add(node(10, 4, count=1))
    with pytest.raises(InvalidInput):
        tree.add(node(11, 4, count=5, session_id="other"))
    with pytest.raises(NotFound):
        tree.get(99)
    assert tree.find(99) is None


def test_tree_removes_only_leaves():
    tree = build_tree()

    with pytest.raises(HasDescendants):
        tree.remove_leaf(1)

    removed = tree.remove_leaf(4)
    assert removed.id == 4
    assert 4 not in tree
    assert tree.is_leaf(2)
    assert tree.children(1) == [2, 3]


def test_tree_drop_session_keeps_other_sessions():
    tree = build_tree()
    tree.add(node(5, None, 0, session_id="s2"))
    tree.add(node(6, 5, 2, session_id="s2"))

    assert tree.drop_session("s1") == 4
    assert [item.id for item in tree.for_session("s2")] == [5, 6]
    assert tree.children(5) == [6]
