"""
HTML notification text for each event category.

Addresses found in the contact book and validator ids found in the validator
book are annotated with their names.
"""

import html
from typing import Dict, Optional

from keepers import ValidatorRegistry
from sfc_events import (
    Validator,
    DelegateInfo,
    UndelegateInfo,
    RewardClaimInfo,
    LockedStake,
    UnlockedStake,
    TransferLog,
)

EMOJI_WHALE = "\U0001F40B"
EMOJI_CHECK_MARK = "✅"
EMOJI_CROSS_MARK = "❌"
EMOJI_STAR = "⭐"
EMOJI_LOCK = "\U0001F512"
EMOJI_UNLOCK = "\U0001F513"


class MessageFormatter:
    def __init__(
        self,
        explorer_url: str,
        validators: Optional[ValidatorRegistry] = None,
        contact_book: Optional[Dict[str, str]] = None,
        validator_book: Optional[Dict[int, str]] = None,
    ):
        self.explorer_url = explorer_url.rstrip('/')
        self.validators = validators
        self.contact_book = contact_book or {}
        self.validator_book = validator_book or {}

    def _address(self, address: str) -> str:
        text = f"<code>{html.escape(address)}</code>"
        name = self.contact_book.get((address or "").lower())
        if name:
            text += f" ({html.escape(name)})"
        return text

    def _validator(self, validator_id: int) -> str:
        label = f"validator ID {validator_id}"
        name = self.validator_book.get(validator_id)
        if name:
            label += f" ({html.escape(name)})"
        validator = self.validators.get_by_id(validator_id) if self.validators is not None else None
        if validator is None or not validator.address:
            return label
        return f"<a href=\"{self.explorer_url}/address/{validator.address}\">{label}</a>"

    def _tx_link(self, tx_hash: str, text: str) -> str:
        return f"<a href=\"{self.explorer_url}/tx/{tx_hash}\">{text}</a>"

    def startup(self, display_name: str) -> str:
        return f"stake watcher start ({html.escape(display_name)})"

    def created_validator(self, item: Validator) -> str:
        text = (f"A new <a href=\"{self.explorer_url}/address/{item.address}\">created validator</a> "
                f"with ID <b>{item.id}</b>")
        name = self.validator_book.get(item.id)
        if name:
            text += f" ({html.escape(name)})"
        return text

    def transfer(self, item: TransferLog) -> str:
        return (f"{EMOJI_WHALE} Big {self._tx_link(item.tx_hash, 'transfer')} of <b>{item.amount:f} FTM</b> "
                f"from {self._address(item.from_address)} to {self._address(item.to_address)}")

    def delegate(self, item: DelegateInfo) -> str:
        return (f"{EMOJI_CHECK_MARK} A {self._tx_link(item.tx_hash, 'delegation event')} of "
                f"<b>{item.amount:f} FTM</b> from {self._address(item.delegator)} "
                f"to {self._validator(item.to_validator_id)}")

    def undelegate(self, item: UndelegateInfo) -> str:
        return (f"{EMOJI_CROSS_MARK} An {self._tx_link(item.tx_hash, 'undelegation event')} of "
                f"<b>{item.amount:f} FTM</b> from {self._address(item.delegator)} "
                f"to {self._validator(item.to_validator_id)}")

    def reward_claim(self, item: RewardClaimInfo) -> str:
        return (f"{EMOJI_STAR} A {self._tx_link(item.tx_hash, 'reward claim event')} of "
                f"<b>{item.unlocked_reward:f} FTM</b> from {self._address(item.delegator)} "
                f"to {self._validator(item.to_validator_id)}")

    def locked_stake(self, item: LockedStake) -> str:
        return (f"{EMOJI_LOCK} A {self._tx_link(item.tx_hash, 'locked up stake event')} of "
                f"<b>{item.amount:f} FTM</b> from {self._address(item.delegator)} "
                f"to {self._validator(item.validator_id)}")

    def unlocked_stake(self, item: UnlockedStake) -> str:
        return (f"{EMOJI_UNLOCK} An {self._tx_link(item.tx_hash, 'unlocked stake event')} of "
                f"<b>{item.amount:f} FTM</b> from {self._address(item.delegator)} "
                f"to {self._validator(item.validator_id)}")
