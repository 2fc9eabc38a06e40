#!/usr/bin/env python3
"""
Staking contract client.

Two ways into the chain:
- poll(): bounded eth_getLogs queries over HTTP, routed through EVMProviderPool
- subscribe(): eth_subscribe push streams over WebSocket

Push notifications are queued undecoded; callers decode them with
decode_log() so a single bad item never closes the stream.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed
from web3 import Web3

from amount_utils import parse_quantity
from rpc_failover import EVMProviderPool
from sfc_events import (
    Validator,
    to_validator,
    to_delegate_info,
    to_undelegate_info,
    to_reward_claim_info,
    to_locked_stake,
    to_unlocked_stake,
)

logger = logging.getLogger(__name__)

ABI_PATH = Path(__file__).parent.parent / "abis" / "SFC.json"

DEFAULT_BLOCK_RANGE = 50000
SUBSCRIBE_TIMEOUT_S = 10
WS_PING_INTERVAL = 20
WS_PING_TIMEOUT = 20
WS_MAX_MESSAGE_SIZE = 10 * 1024 * 1024

NEW_HEAD = 'new_head'

# category -> (contract event name, decoder)
LOG_CATEGORIES: Dict[str, Tuple[str, Callable[[Mapping[str, Any]], Any]]] = {
    'created_validator': ('CreatedValidator', to_validator),
    'delegate': ('Delegated', to_delegate_info),
    'undelegate': ('Undelegated', to_undelegate_info),
    'locked_stake': ('LockedUpStake', to_locked_stake),
    'unlocked_stake': ('UnlockedStake', to_unlocked_stake),
    'reward_claim': ('ClaimedRewards', to_reward_claim_info),
}

# validator status word is zero while the validator is fully active
OFFLINE_BIT = 1 << 3


def load_sfc_abi(path: Path = ABI_PATH) -> List[Dict[str, Any]]:
    with open(path, 'r') as f:
        return json.load(f)['abi']


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return Web3.to_bytes(hexstr=value)


def _normalize_log(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce a JSON-RPC log (hex strings) into the shape web3 decodes"""
    log = dict(raw)
    log['topics'] = [_to_bytes(t) for t in raw.get('topics', [])]
    log['data'] = _to_bytes(raw.get('data') or '0x')
    for key in ('blockNumber', 'logIndex', 'transactionIndex'):
        if log.get(key) is not None:
            log[key] = parse_quantity(log[key])
    for key in ('transactionHash', 'blockHash'):
        if log.get(key) is not None:
            log[key] = _to_bytes(log[key])
    return log


class SubscriptionError(Exception):
    """Raised when a push subscription cannot be established"""
    pass


class Subscription:
    """
    Live eth_subscribe stream.

    Notifications land in ``queue``; ``error`` resolves exactly once (its
    result is the exception) when the socket fails or closes.
    """

    def __init__(self, name: str, ws, subscription_id: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.subscription_id = subscription_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.error: asyncio.Future = asyncio.get_running_loop().create_future()
        self.logger = logger or logging.getLogger(__name__)
        self._ws = ws
        self._reader = asyncio.create_task(self._read(), name=f"{name}-reader")

    def _fail(self, exc: BaseException) -> None:
        if not self.error.done():
            self.error.set_result(exc)

    async def _read(self):
        try:
            async for raw_message in self._ws:
                try:
                    message = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    self.logger.debug(f"{self.name}: invalid JSON message dropped: {e}")
                    continue

                # eth_subscribe notifications have method "eth_subscription"
                if message.get("method") != "eth_subscription":
                    continue
                params = message.get("params") or {}
                if params.get("subscription") != self.subscription_id:
                    continue
                result = params.get("result")
                if result:
                    self.queue.put_nowait(result)

            self._fail(ConnectionError(f"{self.name} subscription socket closed"))
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            self._fail(e)
        except Exception as e:
            self._fail(e)

    async def close(self) -> None:
        self._reader.cancel()
        try:
            await self._reader
        except asyncio.CancelledError:
            pass
        await self._ws.close()
        self._fail(ConnectionError(f"{self.name} subscription closed"))


class SFCClient:
    """Polls and subscribes to staking contract events"""

    def __init__(
        self,
        contract_address: str,
        provider_pool: EVMProviderPool,
        ws_urls: List[str],
        block_range: int = DEFAULT_BLOCK_RANGE,
        abi: Optional[List[Dict[str, Any]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if block_range <= 0:
            raise ValueError(f"block_range must be positive, got {block_range}")
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.pool = provider_pool
        self.ws_urls = list(ws_urls)
        self.block_range = block_range
        self.abi = abi if abi is not None else load_sfc_abi()
        self.logger = logger or logging.getLogger(__name__)

        # providerless instance, only used for ABI decoding
        self._decoder = Web3().eth.contract(address=self.contract_address, abi=self.abi)
        self._topics = {
            category: self._event_topic(event_name)
            for category, (event_name, _) in LOG_CATEGORIES.items()
        }

    def _event_topic(self, event_name: str) -> str:
        for item in self.abi:
            if item.get('type') == 'event' and item.get('name') == event_name:
                signature = f"{event_name}({','.join(i['type'] for i in item['inputs'])})"
                return Web3.to_hex(Web3.keccak(text=signature))
        raise ValueError(f"Event {event_name} not found in SFC ABI")

    def _log_category(self, category: str) -> Tuple[str, Callable[[Mapping[str, Any]], Any]]:
        try:
            return LOG_CATEGORIES[category]
        except KeyError:
            raise ValueError(f"Unknown log category: {category}")

    def topic_for(self, category: str) -> str:
        self._log_category(category)
        return self._topics[category]

    def decode_log(self, category: str, raw_log: Mapping[str, Any]):
        """Decode one raw log into its typed record; raises on malformed input"""
        event_name, decoder = self._log_category(category)
        event = getattr(self._decoder.events, event_name)().process_log(_normalize_log(raw_log))
        return decoder(event)

    # polling

    def latest_block_number(self) -> int:
        return self.pool.with_web3(lambda w3: w3.eth.block_number, label="eth_blockNumber")

    def _get_logs(self, category: str, from_block: int, to_block: int) -> List[Any]:
        log_filter = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": self.contract_address,
            "topics": [self._topics[category]],
        }
        return self.pool.with_web3(
            lambda w3: w3.eth.get_logs(log_filter),
            label=f"get_logs {category} {from_block}-{to_block}",
        )

    def poll(self, category: str, from_block: int, to_block: Optional[int] = None) -> List[Any]:
        """
        Fetch and decode all events of a category in [from_block, to_block].

        The range is split into block_range windows. Malformed logs are
        dropped. The result is sorted stably: validators by id, everything
        else by block number.
        """
        self._log_category(category)
        if to_block is None:
            to_block = self.latest_block_number()
        from_block = max(0, int(from_block))
        if from_block > to_block:
            return []

        items = []
        start = from_block
        while start <= to_block:
            end = min(start + self.block_range - 1, to_block)
            logs = self._get_logs(category, start, end)
            for raw_log in logs:
                try:
                    items.append(self.decode_log(category, raw_log))
                except Exception as e:
                    self.logger.debug(f"Dropping malformed {category} log in blocks {start}-{end}: {e}")
            self.logger.debug(f"Polled {len(logs)} {category} logs in blocks {start}-{end}")
            start = end + 1

        if category == 'created_validator':
            items.sort(key=lambda v: v.id)
        else:
            items.sort(key=lambda e: e.block_number)
        return items

    # contract reads

    def get_validator_by_id(self, validator_id: int) -> Validator:
        result = self.pool.with_contract_call(
            self.contract_address, self.abi,
            lambda c: c.functions.getValidator(validator_id).call(),
        )
        status, deactivated_time, deactivated_epoch, _received_stake, created_epoch, created_time, auth = result
        return Validator(
            id=int(validator_id),
            address=Web3.to_checksum_address(auth),
            created_time=int(created_time),
            created_epoch=int(created_epoch),
            deactivated_time=int(deactivated_time),
            deactivated_epoch=int(deactivated_epoch),
            is_active=int(status) == 0,
            is_offline=bool(int(status) & OFFLINE_BIT),
        )

    def get_last_validator_id(self) -> int:
        return int(self.pool.with_contract_call(
            self.contract_address, self.abi,
            lambda c: c.functions.lastValidatorID().call(),
        ))

    # push subscriptions

    def _subscription_payload(self, category: str) -> Dict[str, Any]:
        if category == NEW_HEAD:
            params: List[Any] = ["newHeads"]
        else:
            params = ["logs", {"address": self.contract_address, "topics": [self.topic_for(category)]}]
        return {"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": params}

    async def _handshake(self, ws, payload: Dict[str, Any]) -> str:
        await ws.send(json.dumps(payload))
        try:
            response = await asyncio.wait_for(ws.recv(), timeout=SUBSCRIBE_TIMEOUT_S)
        except asyncio.TimeoutError:
            raise SubscriptionError("Subscription response timed out")
        response_data = json.loads(response)
        if "error" in response_data:
            raise SubscriptionError(f"Subscription error: {response_data['error']}")
        subscription_id = response_data.get("result")
        if not subscription_id:
            raise SubscriptionError(f"Unexpected subscription response: {response_data}")
        return subscription_id

    async def subscribe(self, category: str) -> Subscription:
        """Open an eth_subscribe stream, trying WebSocket endpoints in preference order"""
        if not self.ws_urls:
            raise SubscriptionError("No WebSocket endpoints configured")
        payload = self._subscription_payload(category)
        last_error: Optional[Exception] = None

        for index, url in enumerate(self.ws_urls):
            ws = None
            try:
                ws = await websockets.connect(
                    url,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=WS_PING_TIMEOUT,
                    max_size=WS_MAX_MESSAGE_SIZE,
                )
                subscription_id = await self._handshake(ws, payload)
            except asyncio.CancelledError:
                if ws is not None:
                    await ws.close()
                raise
            except Exception as e:
                last_error = e
                self.logger.debug(f"{category}: websocket endpoint #{index} failed: {e}")
                if ws is not None:
                    await ws.close()
                continue

            self.logger.info(f"Subscribed to {category} (subscription {subscription_id})")
            return Subscription(category, ws, subscription_id, logger=self.logger)

        raise SubscriptionError(f"All websocket endpoints failed for {category}: {last_error}")
