"""
Enum definitions for the store.
"""

from enum import IntEnum


class AddressState(IntEnum):
    """Address lifecycle states. Values are persisted, do not renumber."""
    ACTIVE = 0  # ban enforced by the firewall
    ADD_PENDING = 1  # ban recorded, not yet in the firewall
    REMOVE_PENDING = 2  # awaiting firewall removal, row then deleted
    FAILED_LOGIN = 3  # not banned, counting failures
    # awaiting firewall removal, row then demoted to FAILED_LOGIN so tiered
    # ban durations can see prior offences
    REMOVE_PENDING_BECOME_FAILED_LOGIN = 4


PENDING_STATES = (
    AddressState.ADD_PENDING,
    AddressState.REMOVE_PENDING,
    AddressState.REMOVE_PENDING_BECOME_FAILED_LOGIN,
)

BANNED_STATES = (AddressState.ACTIVE, AddressState.ADD_PENDING)
