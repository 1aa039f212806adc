"""Typed tree walk over line-item group instances.

A GroupNode pairs one (sub)group definition with one group instance in the
LineItemState arena. Children are keyed by parent row id, one node per
declared sub-group, so nested traversal never inspects config shapes.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from formengine.domain.forms.definition import FormDefinition, LineItemGroupConfig
from formengine.domain.forms.group_path import GroupPath
from formengine.domain.forms.line_item_state import LineItemRow, LineItemState
from formengine.domain.forms.lookup import FieldLookup, RowLookup


@dataclass
class GroupNode:
    path: GroupPath
    config: LineItemGroupConfig
    rows: Tuple[LineItemRow, ...] = ()
    children: Dict[str, List["GroupNode"]] = field(default_factory=dict)

    @classmethod
    def build(cls, config: LineItemGroupConfig, path: GroupPath, state: LineItemState) -> "GroupNode":
        """Build the subtree rooted at one group instance."""
        rows = state.rows(path)
        node = cls(path=path, config=config, rows=rows)
        for row in rows:
            node.children[row.id] = [
                cls.build(sub, path.child(row.id, sub.id), state) for sub in config.sub_groups
            ]
        return node

    @property
    def key(self) -> str:
        return self.path.key

    def children_of(self, row_id: str) -> List["GroupNode"]:
        return self.children.get(row_id, [])

    def walk(self) -> Iterator["GroupNode"]:
        """Pre-order traversal (this node, then each row's sub-groups in order)."""
        yield self
        for row in self.rows:
            for child in self.children_of(row.id):
                yield from child.walk()


def build_group_trees(definition: FormDefinition, state: LineItemState) -> List[GroupNode]:
    """One tree per top-level line-item question, in declaration order."""
    return [
        GroupNode.build(q.line_item_config, GroupPath.root(q.id), state)
        for q in definition.line_item_questions
    ]


def walk_group_instances(definition: FormDefinition, state: LineItemState) -> Iterator[GroupNode]:
    for tree in build_group_trees(definition, state):
        yield from tree.walk()


def row_lookup_for(
    top: FieldLookup,
    state: LineItemState,
    path: GroupPath,
    row: LineItemRow,
) -> RowLookup:
    """Row lookup escalating through every ancestor row, then the record."""
    lookup = top
    for parent_path, parent_row in reversed(state.ancestor_rows(path)):
        lookup = RowLookup(parent_row.values, lookup, group_key=parent_path.key, row_id=parent_row.id)
    return RowLookup(row.values, lookup, group_key=path.key, row_id=row.id)


def find_group_node(trees: List[GroupNode], path: GroupPath) -> Optional[GroupNode]:
    for tree in trees:
        if tree.path.root_group_id != path.root_group_id:
            continue
        for node in tree.walk():
            if node.path == path:
                return node
    return None
