from __future__ import annotations

from typing import Any, Dict, List, Tuple

PresenceMetas = List[Dict[str, Any]]
PresenceMap = Dict[str, PresenceMetas]


def _metas(entry: Any) -> PresenceMetas:
    if isinstance(entry, dict):
        metas = entry.get("metas")
        if isinstance(metas, list):
            return [m for m in metas if isinstance(m, dict)]
    if isinstance(entry, list):
        return [m for m in entry if isinstance(m, dict)]
    return []


def _refs(metas: PresenceMetas) -> set:
    return {m.get("phx_ref") for m in metas}


class PresenceState:
    """
    Client mirror of a channel's presence map (key -> list of metas).

    The backend sends one full ``presence_state`` frame after join and
    ``presence_diff`` frames afterwards. Both are reduced to joins/leaves so
    callers see the same notifications either way.
    """

    def __init__(self) -> None:
        self.state: PresenceMap = {}

    # ------------------------------------------------------------

    def sync_state(self, payload: Any) -> Tuple[PresenceMap, PresenceMap]:
        """Replace the mirror with a full state frame. Returns (joins, leaves)."""
        incoming: PresenceMap = {}
        if isinstance(payload, dict):
            for key, entry in payload.items():
                metas = _metas(entry)
                if metas:
                    incoming[str(key)] = metas

        joins: PresenceMap = {}
        leaves: PresenceMap = {}

        for key, metas in self.state.items():
            if key not in incoming:
                leaves[key] = metas

        for key, metas in incoming.items():
            current = self.state.get(key)
            if current is None:
                joins[key] = metas
                continue
            current_refs = _refs(current)
            new_refs = _refs(metas)
            added = [m for m in metas if m.get("phx_ref") not in current_refs]
            removed = [m for m in current if m.get("phx_ref") not in new_refs]
            if added:
                joins[key] = added
            if removed:
                leaves[key] = removed

        self.state = incoming
        return joins, leaves

    def sync_diff(self, payload: Any) -> Tuple[PresenceMap, PresenceMap]:
        """Apply a ``{"joins": ..., "leaves": ...}`` frame. Returns (joins, leaves)."""
        if not isinstance(payload, dict):
            return {}, {}

        joins: PresenceMap = {}
        leaves: PresenceMap = {}

        raw_joins = payload.get("joins") if isinstance(payload.get("joins"), dict) else {}
        raw_leaves = payload.get("leaves") if isinstance(payload.get("leaves"), dict) else {}

        for key, entry in raw_joins.items():
            metas = _metas(entry)
            if not metas:
                continue
            key = str(key)
            existing = self.state.get(key, [])
            known = _refs(existing)
            self.state[key] = existing + [m for m in metas if m.get("phx_ref") not in known]
            joins[key] = metas

        for key, entry in raw_leaves.items():
            metas = _metas(entry)
            key = str(key)
            existing = self.state.get(key)
            if existing is None:
                continue
            gone = _refs(metas)
            remaining = [m for m in existing if m.get("phx_ref") not in gone]
            if remaining:
                self.state[key] = remaining
            else:
                self.state.pop(key, None)
            leaves[key] = metas

        return joins, leaves

    # ------------------------------------------------------------

    def list(self) -> PresenceMap:
        return {key: list(metas) for key, metas in self.state.items()}

    def clear(self) -> None:
        self.state = {}
