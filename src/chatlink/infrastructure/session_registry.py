from __future__ import annotations

"""In-memory registry of Connection records keyed by identity key.

Records are immutable dataclasses, so ``get``/``snapshot`` hand out values that
readers cannot mutate. Only the lifecycle controller calls ``put``/``remove``.
"""

from typing import Dict, Iterator, List, Optional

from ..core.state_machine import Connection, ConnectionState, IdentityKey


class SessionRegistry:
    def __init__(self) -> None:
        self._entries: Dict[IdentityKey, Connection] = {}

    def get(self, key: str) -> Optional[Connection]:
        return self._entries.get(IdentityKey(key))

    def put(self, key: str, connection: Connection) -> None:
        if connection.key != key:
            raise ValueError(f"Connection key {connection.key!r} does not match registry key {key!r}")
        self._entries[IdentityKey(key)] = connection

    def remove(self, key: str) -> Optional[Connection]:
        return self._entries.pop(IdentityKey(key), None)

    def snapshot(self) -> List[Connection]:
        return list(self._entries.values())

    def count_in(self, *states: ConnectionState) -> int:
        wanted = set(states)
        return sum(1 for c in self._entries.values() if c.state in wanted)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[IdentityKey]:
        return iter(list(self._entries.keys()))

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
