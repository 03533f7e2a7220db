import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class Access(Enum):
    NONE = None
    READ = "read"
    WRITE = "write"
    READ_WRITE = "read_write"


# Order in which access-controlled parts appear in a scope string
_ACCESS_PARTS = ("account", "trade", "wallet", "block_trade", "block_rfq")


@dataclass
class Scope:
    """
    Access scope of a Deribit token.

    A scope string is a list of parts such as
    ``"connection session:bot trade:read wallet:read_write expires_in:600"``.
    Parts may be separated by spaces (as the server sends them) or commas.
    Unknown parts are ignored when parsing; ``dump`` joins with spaces, as
    the server does.
    """

    mainaccount: bool = False
    connection: bool = False
    session: str = "default"
    account: Access = Access.NONE
    trade: Access = Access.NONE
    wallet: Access = Access.NONE
    expires_in: Optional[int] = None
    ip: Optional[str] = None
    block_trade: Access = Access.NONE
    block_rfq: Access = Access.NONE

    @classmethod
    def named(cls, name: str) -> "Scope":
        """A default scope for the session called ``name``."""
        return cls(session=name)

    @classmethod
    def parse(cls, scope_str: str) -> "Scope":
        scope = cls()
        for part in re.split(r"[,\s]+", scope_str or ""):
            name, _, value = part.partition(":")
            if part == "mainaccount":
                scope.mainaccount = True
            elif part == "connection":
                scope.connection = True
            elif name == "session" and value:
                scope.session = value
            elif name in _ACCESS_PARTS and value in ("read", "write", "read_write"):
                setattr(scope, name, Access(value))
            elif name == "expires_in":
                try:
                    scope.expires_in = int(value)
                except ValueError:
                    continue
            elif name == "ip" and value:
                scope.ip = value
        return scope

    def dump(self) -> str:
        parts: List[str] = []
        if self.mainaccount:
            parts.append("mainaccount")
        if self.connection:
            parts.append("connection")
        parts.append(f"session:{self.session}")
        for name in ("account", "trade", "wallet"):
            access = getattr(self, name)
            if access is not Access.NONE:
                parts.append(f"{name}:{access.value}")
        if self.expires_in is not None:
            parts.append(f"expires_in:{self.expires_in}")
        if self.ip is not None:
            parts.append(f"ip:{self.ip}")
        for name in ("block_trade", "block_rfq"):
            access = getattr(self, name)
            if access is not Access.NONE:
                parts.append(f"{name}:{access.value}")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.dump()
