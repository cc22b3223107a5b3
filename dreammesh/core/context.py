from __future__ import annotations


class ContextAccumulator:
    """
    Reference images of already-verified components, in verification order.

    Each verified component contributes its first snapshot. Callers always
    receive a copy so later verifications never change what an earlier
    request was given.
    """

    def __init__(self) -> None:
        self._images: list[str] = []
        self._owners: list[str] = []

    def add(self, component_id: str, snapshots: list[str]) -> None:
        if snapshots:
            self._images.append(snapshots[0])
            self._owners.append(component_id)

    def images(self) -> list[str]:
        return list(self._images)

    @property
    def component_ids(self) -> list[str]:
        return list(self._owners)
