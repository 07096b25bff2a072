from datetime import datetime

from pydantic import BaseModel, ConfigDict

from ipbandb.models.enums import AddressState


# --- Entries ---

class AddressEntry(BaseModel):
    address: bytes
    address_text: str
    last_failed_login: datetime
    failed_login_count: int
    ban_start_date: datetime | None = None
    ban_end_date: datetime | None = None
    state: AddressState

    model_config = ConfigDict(frozen=True)

    @property
    def is_banned(self) -> bool:
        return self.ban_start_date is not None and self.state in (
            AddressState.ACTIVE,
            AddressState.ADD_PENDING,
        )


# --- Firewall deltas ---

class AddressDelta(BaseModel):
    ip_address: str
    added: bool

    model_config = ConfigDict(frozen=True)
