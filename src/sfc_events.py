"""
Typed staking-contract events and the decoders that build them.

Decoders take web3-decoded contract logs (``args``, ``blockNumber``,
``transactionHash``) or raw transaction mappings and return immutable records.
Every monetary field goes through ``wei_to_float``.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

from web3 import Web3

from amount_utils import wei_to_float, parse_quantity, FTM_DECIMALS


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith('0x') else f"0x{value}"
    return Web3.to_hex(value)


def _address(value: Any) -> str:
    if not value:
        return ""
    try:
        return Web3.to_checksum_address(value)
    except (TypeError, ValueError):
        return str(value)


class _Record:
    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Validator(_Record):
    id: int
    address: str
    created_time: int = 0
    created_epoch: int = 0
    deactivated_time: int = 0
    deactivated_epoch: int = 0
    is_active: bool = False
    is_offline: bool = False


@dataclass(frozen=True)
class DelegateInfo(_Record):
    delegator: str
    to_validator_id: int
    amount: float
    block_number: int
    tx_hash: str


@dataclass(frozen=True)
class UndelegateInfo(_Record):
    delegator: str
    to_validator_id: int
    wr_id: int
    amount: float
    block_number: int
    tx_hash: str


@dataclass(frozen=True)
class RewardClaimInfo(_Record):
    delegator: str
    to_validator_id: int
    lockup_extra_reward: float
    lockup_base_reward: float
    unlocked_reward: float
    block_number: int
    tx_hash: str


@dataclass(frozen=True)
class LockedStake(_Record):
    delegator: str
    validator_id: int
    duration: int
    amount: float
    block_number: int
    tx_hash: str


@dataclass(frozen=True)
class UnlockedStake(_Record):
    delegator: str
    validator_id: int
    amount: float
    penalty: float
    block_number: int
    tx_hash: str


@dataclass(frozen=True)
class TransferLog(_Record):
    block_number: int
    tx_hash: str
    from_address: str
    to_address: str
    amount: float


# decoders for contract logs

def to_validator(event: Mapping[str, Any]) -> Validator:
    args = event['args']
    # a freshly created validator starts with status OK
    return Validator(
        id=int(args['validatorID']),
        address=_address(args['auth']),
        created_time=int(args['createdTime']),
        created_epoch=int(args['createdEpoch']),
        is_active=True,
    )


def to_delegate_info(event: Mapping[str, Any]) -> DelegateInfo:
    args = event['args']
    return DelegateInfo(
        delegator=_address(args['delegator']),
        to_validator_id=int(args['toValidatorID']),
        amount=wei_to_float(args['amount'], FTM_DECIMALS),
        block_number=int(event['blockNumber']),
        tx_hash=_hex(event['transactionHash']),
    )


def to_undelegate_info(event: Mapping[str, Any]) -> UndelegateInfo:
    args = event['args']
    return UndelegateInfo(
        delegator=_address(args['delegator']),
        to_validator_id=int(args['toValidatorID']),
        wr_id=int(args['wrID']),
        amount=wei_to_float(args['amount'], FTM_DECIMALS),
        block_number=int(event['blockNumber']),
        tx_hash=_hex(event['transactionHash']),
    )


def to_reward_claim_info(event: Mapping[str, Any]) -> RewardClaimInfo:
    args = event['args']
    return RewardClaimInfo(
        delegator=_address(args['delegator']),
        to_validator_id=int(args['toValidatorID']),
        lockup_extra_reward=wei_to_float(args['lockupExtraReward'], FTM_DECIMALS),
        lockup_base_reward=wei_to_float(args['lockupBaseReward'], FTM_DECIMALS),
        unlocked_reward=wei_to_float(args['unlockedReward'], FTM_DECIMALS),
        block_number=int(event['blockNumber']),
        tx_hash=_hex(event['transactionHash']),
    )


def to_locked_stake(event: Mapping[str, Any]) -> LockedStake:
    args = event['args']
    return LockedStake(
        delegator=_address(args['delegator']),
        validator_id=int(args['validatorID']),
        duration=int(args['duration']),
        amount=wei_to_float(args['amount'], FTM_DECIMALS),
        block_number=int(event['blockNumber']),
        tx_hash=_hex(event['transactionHash']),
    )


def to_unlocked_stake(event: Mapping[str, Any]) -> UnlockedStake:
    args = event['args']
    return UnlockedStake(
        delegator=_address(args['delegator']),
        validator_id=int(args['validatorID']),
        amount=wei_to_float(args['amount'], FTM_DECIMALS),
        penalty=wei_to_float(args['penalty'], FTM_DECIMALS),
        block_number=int(event['blockNumber']),
        tx_hash=_hex(event['transactionHash']),
    )


def to_transfer_log(tx: Mapping[str, Any], block_number: Optional[int] = None) -> TransferLog:
    """Build a transfer record from a node or GraphQL transaction mapping."""
    if block_number is None:
        block_number = parse_quantity(tx['blockNumber'])
    return TransferLog(
        block_number=int(block_number),
        tx_hash=_hex(tx['hash']),
        from_address=_address(tx.get('from')),
        to_address=_address(tx.get('to')),
        amount=wei_to_float(parse_quantity(tx['value']), FTM_DECIMALS),
    )


def is_plain_transfer(tx: Mapping[str, Any]) -> bool:
    """True for value transfers that carry no call data."""
    data = tx.get('input', tx.get('inputData'))
    if data is None:
        return False
    if not isinstance(data, str):
        return len(data) == 0
    return data in ('', '0x')
