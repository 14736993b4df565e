from __future__ import annotations

import logging
import random
import string
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from ..shared.errors import LinkExpiredError, NotFoundError, Result, UserNotFound, ValidationError
from ..shared.json_files import atomic_write_json, load_json
from .models import LinkingCode
from .store import AccountStore

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


class LinkingDesk:
    """
    Binds an external identity (Discord) to an in-game username.

      Unlinked --login--> CodeIssued --in-game code--> Linked --unlink--> Unlinked
      CodeIssued expires after ttl_s; checked lazily when the code is used.
    """

    def __init__(
        self,
        store: AccountStore,
        path: Path,
        ttl_s: int = 24 * 60 * 60,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.path = Path(path)
        self.ttl_s = int(ttl_s)
        self.rng = rng or random.SystemRandom()
        self.clock = clock
        self.log = log or logging.getLogger("ledger.linking")
        self.codes: Dict[str, LinkingCode] = {}
        self.reload()

    def reload(self) -> None:
        try:
            raw = load_json(self.path, {})
        except (OSError, ValueError):
            self.log.exception("Failed to read pending links from %s", self.path)
            return
        self.codes = {
            str(code): LinkingCode.from_dict(str(code), rec)
            for code, rec in (raw.items() if isinstance(raw, dict) else [])
            if isinstance(rec, dict)
        }

    def persist(self) -> bool:
        try:
            atomic_write_json(self.path, {c: lc.to_dict() for c, lc in self.codes.items()})
            return True
        except OSError:
            self.log.exception("Failed to save pending links")
            return False

    def _new_code(self) -> str:
        while True:
            code = "".join(self.rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if code not in self.codes:
                return code

    def _expired(self, lc: LinkingCode) -> bool:
        return self.clock() - lc.ts > self.ttl_s

    def begin_login(self, external_id: str, tag: str) -> Result:
        if not external_id:
            return Result.failure(ValidationError("External identity required"))
        owner = self.store.find_by_identity(external_id)
        if owner is not None:
            return Result.success({"state": "linked", "username": owner.username})

        code = self._new_code()
        self.codes[code] = LinkingCode(code=code, external_id=str(external_id), tag=str(tag or ""), ts=int(self.clock()))
        self.persist()
        self.log.info("Issued linking code for %s (%s)", tag, external_id)
        return Result.success({"state": "code_issued", "code": code})

    def confirm(self, username: str, code: str) -> Result:
        username = str(username or "").strip()
        code = str(code or "").strip().upper()
        if not username or not code:
            return Result.failure(ValidationError("Username and linking code required"))

        lc = self.codes.get(code)
        if lc is None:
            return Result.failure(NotFoundError("Invalid or expired linking code"))
        if self._expired(lc):
            del self.codes[code]
            self.persist()
            return Result.failure(LinkExpiredError())

        owner = self.store.find_by_identity(lc.external_id)
        if owner is not None and owner.key != username.lower():
            del self.codes[code]
            self.persist()
            return Result.failure(ValidationError(f"Identity already linked to {owner.username}"))

        acct = self.store.get_or_create(username)
        acct.linked_identity = {"id": lc.external_id, "tag": lc.tag}
        self.store.persist()

        del self.codes[code]
        self.persist()
        self.log.info("Linked %s to %s", acct.username, lc.tag)
        return Result.success(acct)

    def login(self, external_id: str) -> Result:
        if not external_id:
            return Result.failure(ValidationError("Discord ID required"))
        acct = self.store.find_by_identity(external_id)
        if acct is None:
            return Result.failure(NotFoundError("Discord account not linked. Please link your account first."))
        return Result.success(acct)

    def unlink(self, username: str) -> Result:
        if not username:
            return Result.failure(ValidationError("Username required"))
        acct = self.store.find_by_username(username)
        if acct is None:
            return Result.failure(UserNotFound(username))
        if not acct.linked_identity:
            return Result.failure(ValidationError("No Discord account linked"))
        acct.linked_identity = None
        self.store.persist()
        self.log.info("Unlinked %s", acct.username)
        return Result.success(acct)

    def pending(self) -> Dict[str, dict]:
        return {c: lc.to_dict() for c, lc in self.codes.items() if not self._expired(lc)}
