"""Trip roles and their hierarchy.

Learn: Two roles, totally ordered. A grant satisfies a requirement when
its rank is >= the required rank, so editor covers viewer. Admin is not a
role here — it's an account flag that bypasses grants entirely.
"""

import enum


class Role(str, enum.Enum):
    VIEWER = "viewer"
    EDITOR = "editor"

    @property
    def rank(self) -> int:
        return _RANK[self]

    def satisfies(self, required: "Role") -> bool:
        """True if holding this role meets a `required` minimum."""
        return self.rank >= Role(required).rank


_RANK = {Role.VIEWER: 1, Role.EDITOR: 2}
