class RecipientDirectory:
    """Known recipients by role, including those currently offline.

    Role broadcasts consult the directory so offline members get the
    notification queued instead of being missed.
    """

    def __init__(self) -> None:
        self._roles: dict[str, str] = {}

    def register(self, identity: str, role: str) -> None:
        if not identity or not role:
            raise ValueError("identity and role are required")
        self._roles[identity] = role

    def remove(self, identity: str) -> None:
        self._roles.pop(identity, None)

    def role_of(self, identity: str) -> str | None:
        return self._roles.get(identity)

    def members(self, role: str) -> list[str]:
        return [identity for identity, r in self._roles.items() if r == role]

    def all(self) -> list[str]:
        return list(self._roles)

    def __contains__(self, identity: object) -> bool:
        return identity in self._roles

    def __len__(self) -> int:
        return len(self._roles)
