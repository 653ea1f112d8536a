from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError

import tvm_crypto
from identity_store import IdentityStore
from tvm_log import EventLog

USER_ID = "userid"
HASH_SALTED_PASSWORD = "hash_salted_password"
IS_ENABLED = "enabled"

_STORE_ERRORS = (BotoCoreError, ClientError)


class UserDirectory:
    """
    Users domain: username -> userid, salted password hash, enabled flag.

    The password itself is never stored. The hash doubles as the shared
    secret a client signs login timestamps with.
    """

    def __init__(self, store: IdentityStore, *, domain: str, app_name: str, log: EventLog) -> None:
        self._store = store
        self.domain = domain
        self._app_name = app_name
        self._log = log

    def ensure_domain(self) -> None:
        if self._store.ensure_domain(self.domain):
            self._log.info("tvm_domain_created", domain=self.domain)

    def password_hash_for(self, username: str, password: str, endpoint: str) -> str:
        return tvm_crypto.salted_password_hash(username, password, endpoint, self._app_name)

    def exists(self, username: str) -> bool:
        return bool(self._store.get(self.domain, username))

    def register(self, username: str, password: str, endpoint: str) -> bool:
        try:
            if self.exists(username):
                return False
            self._store.put(
                self.domain,
                username,
                {
                    USER_ID: tvm_crypto.random_token(),
                    HASH_SALTED_PASSWORD: self.password_hash_for(username, password, endpoint),
                    IS_ENABLED: "true",
                },
            )
            return self.authenticate_by_password(username, password, endpoint)
        except _STORE_ERRORS as e:
            self._log.warning(
                "tvm_user_register_failed",
                username=username,
                error={"type": type(e).__name__, "message": str(e)},
            )
            return False

    def authenticate_by_password(self, username: str, password: str, endpoint: str) -> bool:
        if not username or password is None:
            return False
        stored = self._store.get(self.domain, username).get(HASH_SALTED_PASSWORD)
        if not stored:
            return False
        return stored == self.password_hash_for(username, password, endpoint)

    def authenticate_by_signature(self, username: str, timestamp: str, signature: str) -> str | None:
        attributes = self._store.get(self.domain, username) if username else {}
        password_hash = attributes.get(HASH_SALTED_PASSWORD)
        if not password_hash:
            return None
        computed = tvm_crypto.sign(timestamp, password_hash)
        if not tvm_crypto.constant_time_equals(signature, computed):
            return None
        return attributes.get(USER_ID) or None

    def get_password_hash(self, username: str) -> str | None:
        return self._store.get(self.domain, username).get(HASH_SALTED_PASSWORD) or None

    def get_userid(self, username: str) -> str | None:
        return self._store.get(self.domain, username).get(USER_ID) or None

    def username_for_userid(self, userid: str) -> str | None:
        if not userid:
            return None
        names = self._store.find_item_names(self.domain, USER_ID, userid)
        # userid values are random and never reused; more than one match means
        # the domain was edited by hand and nobody can be trusted with it.
        if len(names) != 1:
            if names:
                self._log.warning("tvm_userid_ambiguous", userid=userid, matches=len(names))
            return None
        return names[0]

    def describe(self, username: str) -> dict[str, str]:
        attributes = self._store.get(self.domain, username)
        if not attributes:
            return {}
        return {
            "username": username,
            USER_ID: attributes.get(USER_ID, ""),
            IS_ENABLED: attributes.get(IS_ENABLED, ""),
        }

    def delete(self, username: str) -> None:
        self._store.delete(self.domain, username)

    def list(self, *, next_token: str = "") -> list[str]:
        return list(self._store.item_names(self.domain, next_token=next_token))

    def count(self) -> int:
        return self._store.count(self.domain)
