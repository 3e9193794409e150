import importlib
from datetime import datetime, timezone

from eth_abi import encode

models = importlib.import_module("src.ingestion.models")
normalizer = importlib.import_module("src.ingestion.normalizer")
chain_client = importlib.import_module("src.ingestion.chain_client")
http_client = importlib.import_module("src.delivery.http_client")

RawLog = models.RawLog
MemberState = chain_client.MemberState
TransactionReceipt = chain_client.TransactionReceipt
ChainReadError = chain_client.ChainReadError
HttpResponse = http_client.HttpResponse

CONTRACT = "0x" + "c0" * 20
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

DEFINITIONS_BY_NAME = {
    definition.chain_name: definition for definition in normalizer.EVENT_DEFINITIONS
}


def wallet(n):
    return "0x" + f"{n:040x}"


def tx_hash(n):
    return "0x" + f"{n:064x}"


def build_log(chain_name, args, tx, log_index=0, block_number=100, address=CONTRACT):
    definition = DEFINITIONS_BY_NAME[chain_name]
    topics = [definition.topic0]
    data_types = []
    data_values = []
    for item in definition.inputs:
        if item.indexed:
            topics.append("0x" + encode([item.abi_type], [args[item.name]]).hex())
        else:
            data_types.append(item.abi_type)
            data_values.append(args[item.name])
    return RawLog(
        address=address,
        topics=tuple(topics),
        data="0x" + encode(data_types, data_values).hex(),
        block_number=block_number,
        tx_hash=tx,
        log_index=log_index,
    )


def referral_paid_log(referee, referrer, amount, tx, log_index=0, block_number=100):
    return build_log(
        "ReferralPaid",
        {"from": referee, "to": referrer, "amount": amount},
        tx,
        log_index=log_index,
        block_number=block_number,
    )


def member_registered_log(member, upline, plan_id, tx, log_index=0, block_number=100):
    return build_log(
        "MemberRegistered",
        {"member": member, "upline": upline, "planId": plan_id, "cycleNumber": 1},
        tx,
        log_index=log_index,
        block_number=block_number,
    )


def plan_upgraded_log(member, old_plan_id, new_plan_id, tx, log_index=0, block_number=100):
    return build_log(
        "PlanUpgraded",
        {
            "member": member,
            "oldPlanId": old_plan_id,
            "newPlanId": new_plan_id,
            "cycleNumber": 1,
        },
        tx,
        log_index=log_index,
        block_number=block_number,
    )

def member_state(address, plan_id=1, total_earnings="0", total_referrals=0, upline=None):
    return MemberState(
        wallet_address=address,
        upline=upline or models.ZERO_ADDRESS,
        plan_id=plan_id,
        cycle_number=1,
        total_earnings=total_earnings,
        total_referrals=total_referrals,
        registered_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        is_active=True,
    )


class FakeChainClient:
    def __init__(self, head=1000):
        self.head = head
        self.logs = []
        self.members = {}
        self.receipts = {}
        self.unavailable = False
        self.log_calls = []

    def add_log(self, log, succeeded=True):
        self.logs.append(log)
        existing = self.receipts.get(log.tx_hash)
        logs = (existing.logs if existing else ()) + (log,)
        self.receipts[log.tx_hash] = TransactionReceipt(
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            succeeded=succeeded,
            logs=logs,
        )
        return log

    def _check(self):
        if self.unavailable:
            raise ChainReadError("rpc unavailable")

    def get_block_number(self):
        self._check()
        return self.head

    def get_logs(self, address, from_block, to_block):
        self._check()
        self.log_calls.append((from_block, to_block))
        return [
            log
            for log in self.logs
            if from_block <= log.block_number <= to_block and log.address == address
        ]

    def get_member_state(self, wallet_address):
        self._check()
        state = self.members.get(wallet_address)
        if state is None:
            return member_state(wallet_address, plan_id=0)
        return state

    def get_transaction_receipt(self, tx):
        self._check()
        return self.receipts.get(tx)


class RecordingTransport:
    def __init__(self, responses=None, default_status=200):
        self.responses = list(responses or [])
        self.default_status = default_status
        self.calls = []

    def __call__(self, method, url, headers, body, timeout_seconds):
        self.calls.append((method, url, dict(headers), body, timeout_seconds))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return HttpResponse(status_code=self.default_status, body=b"{}", headers={})
