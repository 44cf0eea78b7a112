from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from cortex.core.errors import HasDescendants, InvalidInput, NotFound
from cortex.state.types import Checkpoint


class CheckpointTree:
    """Arena of checkpoints indexed by id.

    Nodes only reference their parent by id. A node can be inserted only when
    its parent is already present, so the parent chain of every node is finite
    and acyclic. Only leaves can be removed, so no subtree is ever orphaned.
    """

    def __init__(self, checkpoints: Iterable[Checkpoint] = ()) -> None:
        self._nodes: dict[int, Checkpoint] = {}
        self._children: dict[int, set[int]] = {}
        for checkpoint in sorted(checkpoints, key=lambda item: item.id):
            self.add(checkpoint)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, checkpoint_id: object) -> bool:
        return checkpoint_id in self._nodes

    def add(self, checkpoint: Checkpoint) -> None:
        """Insert a new node under an existing parent (or as a root)."""

        if checkpoint.id in self._nodes:
            raise InvalidInput(f"Checkpoint {checkpoint.id} already exists")
        if checkpoint.parent_id is not None:
            parent = self._nodes.get(checkpoint.parent_id)
            if parent is None:
                raise NotFound(f"Parent checkpoint {checkpoint.parent_id} not found")
            if parent.session_id != checkpoint.session_id:
                raise InvalidInput("Parent checkpoint belongs to another session")
            if checkpoint.message_count < parent.message_count:
                raise InvalidInput("Checkpoint cannot capture fewer messages than its parent")
        self._nodes[checkpoint.id] = checkpoint
        self._children[checkpoint.id] = set()
        if checkpoint.parent_id is not None:
            self._children[checkpoint.parent_id].add(checkpoint.id)

    def get(self, checkpoint_id: int) -> Checkpoint:
        checkpoint = self._nodes.get(checkpoint_id)
        if checkpoint is None:
            raise NotFound(f"Checkpoint {checkpoint_id} not found")
        return checkpoint

    def find(self, checkpoint_id: int) -> Optional[Checkpoint]:
        return self._nodes.get(checkpoint_id)

    def children(self, checkpoint_id: int) -> list[int]:
        """Return direct children ids in creation order."""

        self.get(checkpoint_id)
        return sorted(self._children[checkpoint_id])

    def is_leaf(self, checkpoint_id: int) -> bool:
        self.get(checkpoint_id)
        return not self._children[checkpoint_id]

    def ancestors(self, checkpoint_id: int) -> list[Checkpoint]:
        """Return the chain from the root down to checkpoint_id, oldest first."""

        chain: list[Checkpoint] = []
        cursor: Optional[int] = checkpoint_id
        while cursor is not None:
            node = self.get(cursor)
            chain.append(node)
            cursor = node.parent_id
        chain.reverse()
        return chain

    def is_ancestor(self, ancestor_id: int, checkpoint_id: int) -> bool:
        return any(node.id == ancestor_id for node in self.ancestors(checkpoint_id))

    def remove_leaf(self, checkpoint_id: int) -> Checkpoint:
        """Detach a leaf node; non-leaves raise HasDescendants."""

        node = self.get(checkpoint_id)
        if self._children[checkpoint_id]:
            raise HasDescendants(
                f"Checkpoint {checkpoint_id} has {len(self._children[checkpoint_id])} child checkpoint(s)"
            )
        del self._nodes[checkpoint_id]
        del self._children[checkpoint_id]
        if node.parent_id is not None:
            self._children[node.parent_id].discard(checkpoint_id)
        return node

    def for_session(self, session_id: str) -> list[Checkpoint]:
        """Return all nodes owned by a session in id order."""

        return sorted(
            (node for node in self._nodes.values() if node.session_id == session_id),
            key=lambda node: node.id,
        )

    def drop_session(self, session_id: str) -> int:
        """Remove every node of a session, leaves first."""

        removed = 0
        for node in reversed(self.for_session(session_id)):
            del self._nodes[node.id]
            self._children.pop(node.id, None)
            if node.parent_id is not None and node.parent_id in self._children:
                self._children[node.parent_id].discard(node.id)
            removed += 1
        return removed
