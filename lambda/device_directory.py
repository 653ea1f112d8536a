from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError

from identity_store import IdentityStore
from tvm_log import EventLog

KEY = "key"
USER_ID = "userid"

_STORE_ERRORS = (BotoCoreError, ClientError)


class DeviceDirectory:
    """Devices domain: uid -> encryption key and owning userid."""

    def __init__(self, store: IdentityStore, *, domain: str, log: EventLog) -> None:
        self._store = store
        self.domain = domain
        self._log = log

    def ensure_domain(self) -> None:
        if self._store.ensure_domain(self.domain):
            self._log.info("tvm_domain_created", domain=self.domain)

    def get_device(self, uid: str) -> dict[str, str]:
        if not uid:
            return {}
        return self._store.get(self.domain, uid)

    def get_key(self, uid: str) -> str | None:
        return self.get_device(uid).get(KEY) or None

    def get_owning_userid(self, uid: str) -> str | None:
        return self.get_device(uid).get(USER_ID) or None

    def register_or_rotate(self, uid: str, new_key: str, userid: str) -> bool:
        """
        Bind `uid` to `userid` with a fresh key.

        A device already owned by another user is left untouched. The write is
        read back with a consistent read; anything other than the key we just
        wrote counts as failure.
        """

        try:
            existing = self.get_owning_userid(uid)
            if existing is not None and existing != userid:
                self._log.warning("tvm_device_owner_conflict", uid=uid)
                return False
            self._store.put(self.domain, uid, {KEY: new_key, USER_ID: userid})
            return self.authenticate(uid, new_key)
        except _STORE_ERRORS as e:
            self._log.warning(
                "tvm_device_register_failed",
                uid=uid,
                error={"type": type(e).__name__, "message": str(e)},
            )
            return False

    def authenticate(self, uid: str, key: str) -> bool:
        # Only called right after the server generated `key` itself, so a
        # plain comparison is used here.
        stored = self.get_key(uid)
        return stored is not None and stored == key

    def describe(self, uid: str) -> dict[str, str]:
        device = self.get_device(uid)
        if not device:
            return {}
        return {"uid": uid, USER_ID: device.get(USER_ID, "")}

    def delete(self, uid: str) -> None:
        self._store.delete(self.domain, uid)

    def list(self, *, next_token: str = "") -> list[str]:
        return list(self._store.item_names(self.domain, next_token=next_token))

    def count(self) -> int:
        return self._store.count(self.domain)
