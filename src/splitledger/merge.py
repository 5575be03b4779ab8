"""Field-level merge policy for reconciling local and remote records.

Records are JSON-safe dicts of an entity's replicated fields (see
models.to_record). The baseline is the last version both sides agreed on.
For every field the remote value trumps when the remote changed it; a field
changed only locally keeps the local value. When both sides changed the same
field, the remote value wins.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)

_MISSING = object()


def changed_fields(
    baseline: dict[str, Any] | None, current: dict[str, Any]
) -> dict[str, Any]:
    """
    Return the fields of current that differ from baseline.

    Args:
        baseline: Last synchronized record, or None if never synchronized
        current: Current record

    Returns:
        Changed fields (all of current when there is no baseline)
    """
    if baseline is None:
        return dict(current)
    return {
        key: value
        for key, value in current.items()
        if baseline.get(key, _MISSING) != value
    }


def merge_fields(
    baseline: dict[str, Any] | None,
    local: dict[str, Any] | None,
    remote: dict[str, Any],
) -> dict[str, Any]:
    """
    Three-way merge of a local and a remote record against their baseline.

    Args:
        baseline: Last synchronized record, or None if never synchronized
        local: Current local record, or None if it does not exist locally
        remote: Incoming remote record

    Returns:
        The merged record
    """
    if local is None:
        return dict(remote)

    merged: dict[str, Any] = {}
    remote_changes = changed_fields(baseline, remote)

    for key in sorted(set(local) | set(remote)):
        if key in remote_changes:
            merged[key] = remote_changes[key]
            if key in local and local[key] != remote_changes[key]:
                logger.debug(f"Field '{key}' changed remotely, remote value wins")
        elif key in local:
            merged[key] = local[key]
        else:
            merged[key] = remote[key]

    return merged
