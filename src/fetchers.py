"""
Poll sources for the validator list and per-block plain transfers.

Fetchers are tried in priority order by the orchestrator; each one raises on
transport failure and drops (with a debug log) individual malformed items.
"""

import logging
from typing import Any, Dict, List, Optional

from amount_utils import parse_quantity
from rpc_failover import HttpEndpointPool
from sfc_client import SFCClient
from sfc_events import Validator, TransferLog, to_transfer_log, is_plain_transfer

GRAPHQL_TIMEOUT_S = 5

STAKERS_QUERY = """
query {
  stakers {
    id
    stakerAddress
    isActive
    isOffline
    createdTime
    createdEpoch
    deactivatedTime
    deactivatedEpoch
  }
}
"""

BLOCK_TXS_QUERY = """
query BlockTransactions($blockNumber: Long!) {
  block(number: $blockNumber) {
    hash
    transactionCount
    txList {
      hash
      from
      to
      value
      inputData
    }
  }
}
"""


class FetcherError(Exception):
    """Raised when a poll source answers with an unusable response"""
    pass


class GraphqlFetcher:
    """Explorer GraphQL API source"""

    name = "graphql"

    def __init__(self, pool: HttpEndpointPool, logger: Optional[logging.Logger] = None):
        self.pool = pool
        self.logger = logger or logging.getLogger(__name__)

    def _query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        response = self.pool.post_json("", payload)
        if response.get("errors"):
            raise FetcherError(f"GraphQL errors: {response['errors']}")
        data = response.get("data")
        if data is None:
            raise FetcherError("GraphQL response has no data")
        return data

    def get_list_validators(self) -> List[Validator]:
        data = self._query(STAKERS_QUERY)
        result = []
        for item in data.get("stakers") or []:
            try:
                validator = Validator(
                    id=parse_quantity(item["id"]),
                    address=item["stakerAddress"],
                    is_active=bool(item.get("isActive")),
                    is_offline=bool(item.get("isOffline")),
                    created_time=parse_quantity(item["createdTime"]),
                    created_epoch=parse_quantity(item["createdEpoch"]),
                    deactivated_time=parse_quantity(item["deactivatedTime"]),
                    deactivated_epoch=parse_quantity(item["deactivatedEpoch"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                self.logger.debug(f"Skipping malformed staker {item!r}: {e}")
                continue
            result.append(validator)

        result.sort(key=lambda v: v.id)
        return result

    def get_transfers_by_block(self, block_number: int) -> List[TransferLog]:
        data = self._query(BLOCK_TXS_QUERY, {"blockNumber": hex(block_number)})
        block = data.get("block")
        if not block or not block.get("transactionCount"):
            return []

        result = []
        for tx in block.get("txList") or []:
            if tx.get("inputData") != "0x":
                continue
            try:
                result.append(to_transfer_log(tx, block_number=block_number))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.debug(f"Skipping malformed transaction in block {block_number}: {e}")
        return result


class NodeFetcher:
    """JSON-RPC node source"""

    name = "node"

    def __init__(self, sfc_client: SFCClient, logger: Optional[logging.Logger] = None):
        self.sfc_client = sfc_client
        self.logger = logger or logging.getLogger(__name__)

    def get_list_validators(self) -> List[Validator]:
        return self.sfc_client.poll('created_validator', 0)

    def get_transfers_by_block(self, block_number: int) -> List[TransferLog]:
        block = self.sfc_client.pool.with_web3(
            lambda w3: w3.eth.get_block(block_number, full_transactions=True),
            label=f"eth_getBlockByNumber {block_number}",
        )

        result = []
        for tx in block.get("transactions") or []:
            if isinstance(tx, (bytes, str)):
                # hash-only listing
                continue
            if not is_plain_transfer(tx) or not tx.get("to"):
                continue
            try:
                result.append(to_transfer_log(tx, block_number=block_number))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.debug(f"Skipping malformed transaction in block {block_number}: {e}")
        return result


def build_fetchers(config_manager, sfc_client: SFCClient, logger: Optional[logging.Logger] = None) -> List[Any]:
    """Fetchers in priority order: GraphQL first when configured, then the node"""
    fetchers: List[Any] = []
    graphql_urls = config_manager.get_graphql_urls()
    if graphql_urls:
        pool = HttpEndpointPool(
            graphql_urls,
            timeout_s=GRAPHQL_TIMEOUT_S,
            preference_reset_minutes=config_manager.get_rpc_preference_reset_minutes(),
        )
        fetchers.append(GraphqlFetcher(pool, logger=logger))
    fetchers.append(NodeFetcher(sfc_client, logger=logger))
    return fetchers
