from dataclasses import dataclass
from enum import IntEnum


class VertexKind(IntEnum):
    USER = 0
    ITEM = 1


@dataclass(frozen=True, order=True)
class CfId:
    """
    Identity of a vertex in the bipartite user-item graph.

    Equality, hashing and ordering are over (kind, id), so user 1 and item 1
    are different vertices.
    """
    kind: VertexKind
    id: int

    @classmethod
    def user(cls, id: int) -> "CfId":
        return cls(VertexKind.USER, int(id))

    @classmethod
    def item(cls, id: int) -> "CfId":
        return cls(VertexKind.ITEM, int(id))

    def is_user(self) -> bool:
        return self.kind == VertexKind.USER

    def is_item(self) -> bool:
        return self.kind == VertexKind.ITEM

    @classmethod
    def parse(cls, text: str) -> "CfId":
        """Inverse of str(): "<id> <kind>" where kind 0 is a user and 1 an item."""
        parts = text.split()
        if len(parts) != 2:
            raise ValueError(f"Error: expected '<id> <kind>' but got '{text}'")
        return cls(VertexKind(int(parts[1])), int(parts[0]))

    def __str__(self) -> str:
        return f"{self.id} {int(self.kind)}"
