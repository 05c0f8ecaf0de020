"""
All the structures needed for Kubernetes patching.

Currently, it is implemented via a JSON merge-patch (RFC 7386),
i.e. a simple dictionary with field overrides, and ``None`` for field deletions.
"""
import collections.abc
from typing import Any, Dict, Mapping, MutableMapping, Optional


class Patch(Dict[str, Any]):

    @property
    def status(self) -> MutableMapping[str, Any]:
        return self.setdefault('status', {})


def diff(
        old: Optional[Mapping[str, Any]],
        new: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    Calculate a merge-patch to turn the old mapping into the new one.

    Nested mappings are patched recursively; all other values (including lists)
    are replaced as a whole. Removed keys are patched with ``None``.
    An empty result means there is nothing to patch.
    """
    old = old if old is not None else {}
    new = new if new is not None else {}
    result: Dict[str, Any] = {}
    for key in set(old) | set(new):
        if key not in new:
            result[key] = None
        elif key not in old:
            result[key] = new[key]
        elif isinstance(old[key], collections.abc.Mapping) and isinstance(new[key], collections.abc.Mapping):
            subdiff = diff(old[key], new[key])
            if subdiff:
                result[key] = subdiff
        elif old[key] != new[key]:
            result[key] = new[key]
    return result
