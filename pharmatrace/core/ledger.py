"""
Ledger Query Facade

Narrow, typed, read-only access to the batch contract.
The rest of the system never sees ABI tuples, checksummed addresses or
RPC exceptions; it sees schemas and two failure kinds:

- LedgerUnavailable: transport/RPC failure. Transient, callers retry.
- TokenNotFound: the token does not exist. Terminal for that lookup.

The transfer state machine and role authorization live in the contract.
Nothing here mutates ledger state.

Implementations:
- Web3LedgerReader: JSON-RPC via web3.py (production)
- InMemoryLedgerReader: development and testing double
- DisabledLedgerReader: no contract configured
"""

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from ..schemas import (
    BatchMinted,
    BatchVerified,
    ChildBatchLinked,
    LedgerEvent,
    OnChainBatch,
    OnChainTransfer,
    OwnershipTransferred,
    Role,
    ZERO_ADDRESS,
    role_from_code,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger access errors."""
    pass


class LedgerUnavailable(LedgerError):
    """Raised on RPC/network failure. Retry with backoff."""
    pass


class TokenNotFound(LedgerError):
    """Raised when a token does not exist on the ledger."""

    def __init__(self, token_id: int):
        super().__init__(f"Token {token_id} does not exist on the ledger")
        self.token_id = token_id


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class LedgerConfig:
    """Connection settings for the batch contract."""
    rpc_url: str = "https://rpc-amoy.polygon.technology"
    contract_address: Optional[str] = None
    request_timeout_seconds: float = 10.0
    retries: int = 2
    backoff_seconds: float = 1.0

    @property
    def is_configured(self) -> bool:
        return bool(self.contract_address)

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - PHARMATRACE_RPC_URL
        - PHARMATRACE_CONTRACT_ADDRESS
        - PHARMATRACE_LEDGER_TIMEOUT_SECONDS
        - PHARMATRACE_LEDGER_RETRIES
        - PHARMATRACE_LEDGER_BACKOFF_SECONDS
        """
        return cls(
            rpc_url=os.environ.get("PHARMATRACE_RPC_URL", "https://rpc-amoy.polygon.technology"),
            contract_address=os.environ.get("PHARMATRACE_CONTRACT_ADDRESS") or None,
            request_timeout_seconds=float(os.environ.get("PHARMATRACE_LEDGER_TIMEOUT_SECONDS", "10")),
            retries=int(os.environ.get("PHARMATRACE_LEDGER_RETRIES", "2")),
            backoff_seconds=float(os.environ.get("PHARMATRACE_LEDGER_BACKOFF_SECONDS", "1.0")),
        )


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    retries: int = 2,
    backoff_seconds: float = 1.0,
    **kwargs: Any,
) -> T:
    """
    Call fn, retrying LedgerUnavailable with a fixed backoff.

    TokenNotFound and every other error propagate immediately.
    After retries are exhausted the last LedgerUnavailable is raised.
    """
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except LedgerUnavailable as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.debug(f"Ledger unavailable ({e}), retry {attempt}/{retries}")
            if backoff_seconds > 0:
                time.sleep(backoff_seconds)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerReader(ABC):
    """
    Read interface over the batch contract.

    Implementations own no mutable state beyond their connection handle
    (the in-memory double excepted, which IS the ledger for tests).
    """

    @property
    @abstractmethod
    def address(self) -> Optional[str]:
        """Lower-cased contract address, None when unconfigured."""
        pass

    @property
    def is_configured(self) -> bool:
        return self.address is not None

    @abstractmethod
    def get_batch_details(self, token_id: int) -> OnChainBatch:
        """Raises TokenNotFound if the token does not exist."""
        pass

    @abstractmethod
    def get_transfer_history(self, token_id: int) -> list[OnChainTransfer]:
        pass

    @abstractmethod
    def get_role(self, address: str) -> Optional[Role]:
        """Role assigned to an address, None if unassigned."""
        pass

    @abstractmethod
    def is_counterfeit(self, token_id: int) -> bool:
        pass

    @abstractmethod
    def owner_of(self, token_id: int) -> str:
        """Raises TokenNotFound if the token does not exist."""
        pass

    @abstractmethod
    def get_parent_batch(self, token_id: int) -> int:
        """Parent token id, 0 when the batch has no parent."""
        pass

    @abstractmethod
    def block_number(self) -> int:
        """Latest block number."""
        pass

    @abstractmethod
    def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        """
        All subscribed contract events in [from_block, to_block],
        ordered as the ledger emitted them.
        """
        pass


# ============================================================
# WEB3 IMPLEMENTATION
# ============================================================

def _abi_function(name: str, inputs: list[tuple[str, str]], outputs: list[dict]) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


def _abi_event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": i} for n, t, i in inputs],
    }


CONTRACT_ABI = [
    _abi_event("BatchMinted", [
        ("tokenId", "uint256", True),
        ("owner", "address", True),
        ("batchID", "string", False),
    ]),
    _abi_event("OwnershipTransferred", [
        ("tokenId", "uint256", True),
        ("from", "address", True),
        ("to", "address", True),
        ("newRole", "uint8", False),
    ]),
    _abi_event("BatchVerified", [
        ("tokenId", "uint256", True),
        ("verifier", "address", True),
        ("valid", "bool", False),
    ]),
    _abi_event("ChildBatchLinked", [
        ("parentId", "uint256", True),
        ("childId", "uint256", True),
    ]),
    _abi_function("getBatchDetails", [("tokenId", "uint256")], [{
        "name": "",
        "type": "tuple",
        "components": [
            {"name": "tokenId", "type": "uint256"},
            {"name": "currentOwner", "type": "address"},
            {"name": "currentRole", "type": "uint8"},
            {"name": "batchID", "type": "string"},
            {"name": "metadataHash", "type": "string"},
            {"name": "metadataURI", "type": "string"},
            {"name": "qrCodeURI", "type": "string"},
            {"name": "timestamp", "type": "uint256"},
            {"name": "manufacturer", "type": "address"},
        ],
    }]),
    _abi_function("getTransferHistory", [("tokenId", "uint256")], [{
        "name": "",
        "type": "tuple[]",
        "components": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "timestamp", "type": "uint256"},
            {"name": "fromRole", "type": "uint8"},
            {"name": "toRole", "type": "uint8"},
        ],
    }]),
    _abi_function("getRole", [("user", "address")], [{"name": "", "type": "uint8"}]),
    _abi_function("isCounterfeit", [("tokenId", "uint256")], [{"name": "", "type": "bool"}]),
    _abi_function("ownerOf", [("tokenId", "uint256")], [{"name": "", "type": "address"}]),
    _abi_function("getParentBatch", [("tokenId", "uint256")], [{"name": "", "type": "uint256"}]),
]


class Web3LedgerReader(LedgerReader):
    """
    web3.py implementation over JSON-RPC.

    Contract reverts (the ERC-721 "nonexistent token" family) map to
    TokenNotFound. Transport errors and other web3 failures map to
    LedgerUnavailable.

    Usage:
        reader = Web3LedgerReader(LedgerConfig.from_env())
        details = reader.get_batch_details(7)
    """

    def __init__(self, config: LedgerConfig, w3: Optional[Web3] = None):
        if not config.is_configured:
            raise LedgerError("Contract address is not configured")

        self._config = config
        self._w3 = w3 or Web3(Web3.HTTPProvider(
            config.rpc_url,
            request_kwargs={"timeout": config.request_timeout_seconds},
        ))
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(config.contract_address),
            abi=CONTRACT_ABI,
        )
        self._address = config.contract_address.lower()

    @property
    def address(self) -> Optional[str]:
        return self._address

    def _call(self, fn_name: str, *args: Any, token_id: Optional[int] = None) -> Any:
        try:
            return getattr(self._contract.functions, fn_name)(*args).call()
        except ContractLogicError as e:
            if token_id is not None:
                raise TokenNotFound(token_id) from e
            raise LedgerError(f"{fn_name} reverted: {e}") from e
        except (Web3Exception, OSError, ValueError) as e:
            # requests' transport errors derive from OSError
            raise LedgerUnavailable(f"{fn_name} failed: {e}") from e

    def get_batch_details(self, token_id: int) -> OnChainBatch:
        raw = self._call("getBatchDetails", int(token_id), token_id=token_id)
        (tid, owner, role, batch_id, metadata_hash,
         metadata_uri, qr_code_uri, timestamp, manufacturer) = raw

        # Unminted slots come back zeroed on some deployments instead of reverting
        if owner == ZERO_ADDRESS or (not batch_id and int(tid) == 0):
            raise TokenNotFound(token_id)

        return OnChainBatch(
            token_id=int(tid),
            current_owner=owner,
            current_role=role_from_code(role),
            batch_id=batch_id,
            metadata_hash=metadata_hash,
            metadata_uri=metadata_uri,
            qr_code_uri=qr_code_uri,
            timestamp=int(timestamp),
            manufacturer=manufacturer,
        )

    def get_transfer_history(self, token_id: int) -> list[OnChainTransfer]:
        raw = self._call("getTransferHistory", int(token_id), token_id=token_id)
        return [
            OnChainTransfer(
                from_address=entry[0],
                to_address=entry[1],
                timestamp=int(entry[2]),
                from_role=role_from_code(entry[3]),
                to_role=role_from_code(entry[4]),
            )
            for entry in raw
        ]

    def get_role(self, address: str) -> Optional[Role]:
        code = self._call("getRole", Web3.to_checksum_address(address))
        return role_from_code(code)

    def is_counterfeit(self, token_id: int) -> bool:
        return bool(self._call("isCounterfeit", int(token_id), token_id=token_id))

    def owner_of(self, token_id: int) -> str:
        return self._call("ownerOf", int(token_id), token_id=token_id).lower()

    def get_parent_batch(self, token_id: int) -> int:
        return int(self._call("getParentBatch", int(token_id), token_id=token_id))

    def block_number(self) -> int:
        try:
            return int(self._w3.eth.block_number)
        except (Web3Exception, OSError, ValueError) as e:
            raise LedgerUnavailable(f"block_number failed: {e}") from e

    def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        events: list[LedgerEvent] = []
        try:
            for log in self._contract.events.BatchMinted().get_logs(
                from_block=from_block, to_block=to_block
            ):
                events.append(BatchMinted(
                    token_id=int(log["args"]["tokenId"]),
                    owner=log["args"]["owner"].lower(),
                    batch_id=log["args"]["batchID"],
                    **self._position(log),
                ))
            for log in self._contract.events.OwnershipTransferred().get_logs(
                from_block=from_block, to_block=to_block
            ):
                events.append(OwnershipTransferred(
                    token_id=int(log["args"]["tokenId"]),
                    from_address=log["args"]["from"].lower(),
                    to_address=log["args"]["to"].lower(),
                    new_role=role_from_code(log["args"]["newRole"]),
                    **self._position(log),
                ))
            for log in self._contract.events.BatchVerified().get_logs(
                from_block=from_block, to_block=to_block
            ):
                events.append(BatchVerified(
                    token_id=int(log["args"]["tokenId"]),
                    verifier=log["args"]["verifier"].lower(),
                    valid=bool(log["args"]["valid"]),
                    **self._position(log),
                ))
            for log in self._contract.events.ChildBatchLinked().get_logs(
                from_block=from_block, to_block=to_block
            ):
                events.append(ChildBatchLinked(
                    parent_id=int(log["args"]["parentId"]),
                    child_id=int(log["args"]["childId"]),
                    **self._position(log),
                ))
        except (Web3Exception, OSError, ValueError) as e:
            raise LedgerUnavailable(f"get_events({from_block}, {to_block}) failed: {e}") from e

        events.sort(key=lambda ev: ev.position)
        return events

    @staticmethod
    def _position(log: Any) -> dict[str, Any]:
        tx_hash = log.get("transactionHash")
        return {
            "block_number": int(log["blockNumber"]),
            "log_index": int(log["logIndex"]),
            "tx_hash": Web3.to_hex(tx_hash) if tx_hash is not None else None,
        }


class DisabledLedgerReader(LedgerReader):
    """
    Reader used when no contract address is configured.

    is_configured is False; every call raises LedgerUnavailable.
    """

    @property
    def address(self) -> Optional[str]:
        return None

    def _unavailable(self, *args: Any) -> Any:
        raise LedgerUnavailable("Ledger is not configured")

    get_batch_details = _unavailable
    get_transfer_history = _unavailable
    get_role = _unavailable
    is_counterfeit = _unavailable
    owner_of = _unavailable
    get_parent_batch = _unavailable
    block_number = _unavailable
    get_events = _unavailable


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

@dataclass
class _Token:
    token_id: int
    batch_id: str
    owner: str
    role: Optional[Role]
    metadata_hash: str
    metadata_uri: str
    manufacturer: str
    timestamp: int
    counterfeit: bool = False
    parent_id: int = 0


class InMemoryLedgerReader(LedgerReader):
    """
    In-memory stand-in for the batch contract.

    Suitable for:
    - Development without an RPC endpoint
    - Testing reconciliation and verification

    The mutators (mint, transfer, flag_counterfeit, ...) record state and
    emit the matching events. They do NOT enforce the contract's role
    authorization or transfer sequencing rules.
    """

    def __init__(self, address: Optional[str] = "0x00000000000000000000000000000000000c0de5"):
        self._address = address.lower() if address else None
        self._tokens: dict[int, _Token] = {}
        self._roles: dict[str, Role] = {}
        self._transfers: dict[int, list[OnChainTransfer]] = {}
        self._events: list[LedgerEvent] = []
        self._block = 0
        self._next_token_id = 1
        self._lock = threading.Lock()

        # Test hook: number of upcoming calls that fail with LedgerUnavailable
        self.fail_next_calls = 0
        self.calls = 0

    @property
    def address(self) -> Optional[str]:
        return self._address

    def _enter(self) -> None:
        with self._lock:
            self.calls += 1
            if self.fail_next_calls > 0:
                self.fail_next_calls -= 1
                raise LedgerUnavailable("simulated RPC failure")

    def _token(self, token_id: int) -> _Token:
        token = self._tokens.get(int(token_id))
        if token is None:
            raise TokenNotFound(token_id)
        return token

    def _emit(self, event: LedgerEvent) -> LedgerEvent:
        self._block += 1
        event.block_number = self._block
        event.log_index = 0
        self._events.append(event)
        return event

    # ---------------------------------------------------------
    # Ledger state mutators (simulate contract transactions)
    # ---------------------------------------------------------

    def set_role(self, address: str, role: Optional[Role]) -> None:
        if role is None:
            self._roles.pop(address.lower(), None)
        else:
            self._roles[address.lower()] = role

    def mint(
        self,
        batch_id: str,
        owner: str,
        metadata_hash: str,
        manufacturer: Optional[str] = None,
        metadata_uri: str = "",
        minted_at: Optional[datetime] = None,
    ) -> int:
        """Mint a batch token and emit BatchMinted. Returns the token id."""
        token_id = self._next_token_id
        self._next_token_id += 1
        minted_at = minted_at or datetime.now(timezone.utc)
        owner = owner.lower()
        self._roles.setdefault(owner, Role.MANUFACTURER)
        self._tokens[token_id] = _Token(
            token_id=token_id,
            batch_id=batch_id,
            owner=owner,
            role=self._roles.get(owner, Role.MANUFACTURER),
            metadata_hash=metadata_hash,
            metadata_uri=metadata_uri,
            manufacturer=(manufacturer or owner).lower(),
            timestamp=int(minted_at.timestamp()),
        )
        self._transfers[token_id] = []
        self._emit(BatchMinted(token_id=token_id, owner=owner, batch_id=batch_id))
        return token_id

    def transfer(self, token_id: int, to_address: str, new_role: Role) -> OwnershipTransferred:
        """Move custody and emit OwnershipTransferred."""
        token = self._token(token_id)
        to_address = to_address.lower()
        self._transfers[token_id].append(OnChainTransfer(
            from_address=token.owner,
            to_address=to_address,
            timestamp=int(datetime.now(timezone.utc).timestamp()),
            from_role=token.role,
            to_role=new_role,
        ))
        from_address = token.owner
        token.owner = to_address
        token.role = new_role
        self._roles.setdefault(to_address, new_role)
        return self._emit(OwnershipTransferred(
            token_id=token_id,
            from_address=from_address,
            to_address=to_address,
            new_role=new_role,
        ))

    def flag_counterfeit(self, token_id: int, flagged: bool = True) -> None:
        self._token(token_id).counterfeit = flagged

    def set_metadata_hash(self, token_id: int, metadata_hash: str) -> None:
        self._token(token_id).metadata_hash = metadata_hash

    def record_verification(self, token_id: int, verifier: str, valid: bool) -> BatchVerified:
        self._token(token_id)
        return self._emit(BatchVerified(token_id=token_id, verifier=verifier.lower(), valid=valid))

    def link_child(self, parent_id: int, child_id: int) -> ChildBatchLinked:
        self._token(parent_id)
        self._token(child_id).parent_id = parent_id
        return self._emit(ChildBatchLinked(parent_id=parent_id, child_id=child_id))

    # ---------------------------------------------------------
    # LedgerReader
    # ---------------------------------------------------------

    def get_batch_details(self, token_id: int) -> OnChainBatch:
        self._enter()
        token = self._token(token_id)
        return OnChainBatch(
            token_id=token.token_id,
            current_owner=token.owner,
            current_role=token.role,
            batch_id=token.batch_id,
            metadata_hash=token.metadata_hash,
            metadata_uri=token.metadata_uri,
            timestamp=token.timestamp,
            manufacturer=token.manufacturer,
        )

    def get_transfer_history(self, token_id: int) -> list[OnChainTransfer]:
        self._enter()
        self._token(token_id)
        return list(self._transfers.get(int(token_id), []))

    def get_role(self, address: str) -> Optional[Role]:
        self._enter()
        return self._roles.get(address.lower())

    def is_counterfeit(self, token_id: int) -> bool:
        self._enter()
        return self._token(token_id).counterfeit

    def owner_of(self, token_id: int) -> str:
        self._enter()
        return self._token(token_id).owner

    def get_parent_batch(self, token_id: int) -> int:
        self._enter()
        return self._token(token_id).parent_id

    def block_number(self) -> int:
        self._enter()
        return self._block

    def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        self._enter()
        return [
            ev for ev in self._events
            if from_block <= ev.block_number <= to_block
        ]
