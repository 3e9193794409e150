from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from web3 import Web3
from web3.exceptions import TransactionNotFound

from .models import RawLog


MEMBERSHIP_READ_ABI: list[dict[str, Any]] = [
    {
        "name": "members",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [
            {"name": "upline", "type": "address"},
            {"name": "totalReferrals", "type": "uint256"},
            {"name": "totalEarnings", "type": "uint256"},
            {"name": "planId", "type": "uint256"},
            {"name": "cycleNumber", "type": "uint256"},
            {"name": "registeredAt", "type": "uint256"},
        ],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class ChainReadError(Exception):
    pass


@dataclass(frozen=True)
class MemberState:
    wallet_address: str
    upline: str
    plan_id: int
    cycle_number: int
    total_earnings: str
    total_referrals: int
    registered_at: Optional[datetime]
    is_active: bool

    def to_mirror_fields(self) -> dict[str, object]:
        return {
            "upline": self.upline,
            "plan_id": self.plan_id,
            "cycle_number": self.cycle_number,
            "total_earnings": self.total_earnings,
            "total_referrals": self.total_referrals,
            "registered_at": self.registered_at,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: Optional[int]
    succeeded: bool
    logs: tuple[RawLog, ...]


class ChainClientProtocol(Protocol):
    def get_block_number(self) -> int: ...

    def get_logs(self, address: str, from_block: int, to_block: int) -> list[RawLog]: ...

    def get_member_state(self, wallet_address: str) -> MemberState: ...

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]: ...


def _to_hex(value: object) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value).lower()  # type: ignore[arg-type]


def _to_raw_log(entry: Any) -> RawLog:
    return RawLog(
        address=str(entry["address"]).lower(),
        topics=tuple(_to_hex(topic) for topic in entry["topics"]),
        data=_to_hex(entry["data"]),
        block_number=int(entry["blockNumber"]),
        tx_hash=_to_hex(entry["transactionHash"]),
        log_index=int(entry["logIndex"]),
    )


class Web3ChainClient:
    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        timeout_seconds: float = 10.0,
        web3_factory: Optional[Callable[[], Web3]] = None,
    ) -> None:
        if web3_factory is not None:
            self._web3 = web3_factory()
        else:
            self._web3 = Web3(
                Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds})
            )
        self._contract_address = Web3.to_checksum_address(contract_address)
        self._contract = self._web3.eth.contract(
            address=self._contract_address, abi=MEMBERSHIP_READ_ABI
        )

    def get_block_number(self) -> int:
        try:
            return int(self._web3.eth.block_number)
        except Exception as error:
            raise ChainReadError(f"block_number failed: {error}") from error

    def get_logs(self, address: str, from_block: int, to_block: int) -> list[RawLog]:
        try:
            entries = self._web3.eth.get_logs(
                {
                    "address": Web3.to_checksum_address(address),
                    "fromBlock": from_block,
                    "toBlock": to_block,
                }
            )
        except Exception as error:
            raise ChainReadError(
                f"get_logs {from_block}-{to_block} failed: {error}"
            ) from error
        return [_to_raw_log(entry) for entry in entries]

    def get_member_state(self, wallet_address: str) -> MemberState:
        checksum = Web3.to_checksum_address(wallet_address)
        try:
            member = self._contract.functions.members(checksum).call()
            balance = self._contract.functions.balanceOf(checksum).call()
        except Exception as error:
            raise ChainReadError(f"member read for {wallet_address} failed: {error}") from error

        upline, total_referrals, total_earnings, plan_id, cycle_number, registered_at = member
        registered = (
            datetime.fromtimestamp(int(registered_at), tz=timezone.utc)
            if int(registered_at) > 0
            else None
        )
        return MemberState(
            wallet_address=wallet_address.lower(),
            upline=str(upline).lower(),
            plan_id=int(plan_id),
            cycle_number=int(cycle_number),
            total_earnings=str(int(total_earnings)),
            total_referrals=int(total_referrals),
            registered_at=registered,
            is_active=int(balance) > 0,
        )

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        try:
            receipt = self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as error:
            raise ChainReadError(f"receipt read for {tx_hash} failed: {error}") from error

        block_number = receipt.get("blockNumber")
        return TransactionReceipt(
            tx_hash=tx_hash.lower(),
            block_number=None if block_number is None else int(block_number),
            succeeded=int(receipt.get("status", 0)) == 1,
            logs=tuple(_to_raw_log(entry) for entry in receipt.get("logs", [])),
        )
