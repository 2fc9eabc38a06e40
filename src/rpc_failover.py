#!/usr/bin/env python3
from typing import List, Callable, Any, Optional, Dict, TypeVar
import logging
import time
from web3 import Web3
import requests

logger = logging.getLogger(__name__)

R = TypeVar('R')


class _StickyPreference:
    """Remembers the last working endpoint index and forgets it on a schedule"""

    def __init__(self, count: int, preference_reset_minutes: int):
        self.count = count
        self.preference_reset_sec = max(1, int(preference_reset_minutes) * 60)
        self._last_reset_ts = 0.0
        self._sticky_index: Optional[int] = None

    def _should_reset_preferences(self) -> bool:
        now = time.time()
        if self._last_reset_ts == 0.0:
            self._last_reset_ts = now
            return False
        return (now - self._last_reset_ts) >= self.preference_reset_sec

    def _call_with_failover(self, label: str, call: Callable[[int], R]) -> R:
        # Reset preference on schedule
        if self._should_reset_preferences():
            self._last_reset_ts = time.time()
            self._sticky_index = None

        last_error: Optional[Exception] = None

        # 1) Try sticky provider first if available
        if self._sticky_index is not None:
            try:
                return call(self._sticky_index)
            except Exception as e:
                last_error = e
                logger.debug(f"{label}: sticky endpoint #{self._sticky_index} failed: {e}")
                self._sticky_index = None

        # 2) Scan from beginning to pick the most preferred working endpoint
        for i in range(self.count):
            try:
                result = call(i)
                self._sticky_index = i
                return result
            except Exception as e:
                last_error = e
                logger.debug(f"{label}: endpoint #{i} failed: {e}")
                continue

        raise ConnectionError(f"All endpoints failed for {label}: {last_error}")


class EVMProviderPool(_StickyPreference):
    def __init__(self, urls: List[str], request_timeout_s: int = 15, preference_reset_minutes: int = 60):
        if not urls:
            raise ValueError("EVMProviderPool requires at least one URL")
        super().__init__(len(urls), preference_reset_minutes)
        self.urls = urls
        self.request_timeout_s = request_timeout_s
        self._web3_cache: Dict[int, Web3] = {}

    def _build_web3(self, index: int) -> Web3:
        w3 = self._web3_cache.get(index)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(self.urls[index], request_kwargs={'timeout': self.request_timeout_s}))
            self._web3_cache[index] = w3
        return w3

    def with_web3(self, fn: Callable[[Web3], R], label: str = "web3 call") -> R:
        """Run fn against the preferred reachable provider"""
        return self._call_with_failover(label, lambda i: fn(self._build_web3(i)))

    def with_contract_call(self, address: str, abi: Any, fn_builder: Callable[[Any], R]) -> R:
        def call(index: int):
            contract = self._build_web3(index).eth.contract(address=address, abi=abi)
            return fn_builder(contract)
        return self._call_with_failover(f"contract call on {address}", call)


class HttpEndpointPool(_StickyPreference):
    def __init__(self, base_urls: List[str], timeout_s: int = 10, preference_reset_minutes: int = 60):
        if not base_urls:
            raise ValueError("HttpEndpointPool requires at least one base URL")
        super().__init__(len(base_urls), preference_reset_minutes)
        self.base_urls = [u.rstrip('/') for u in base_urls]
        self.timeout_s = timeout_s

    def _full_url(self, index: int, path: str) -> str:
        path = path.lstrip('/')
        if not path:
            return self.base_urls[index]
        return f"{self.base_urls[index]}/{path}"

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        def call(index: int):
            resp = requests.get(self._full_url(index, path), params=params, headers=headers, timeout=self.timeout_s)
            resp.raise_for_status()
            return resp.json()
        return self._call_with_failover(f"GET {path or '/'}", call)

    def post_json(self, path: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        def call(index: int):
            resp = requests.post(self._full_url(index, path), json=payload, headers=headers, timeout=self.timeout_s)
            resp.raise_for_status()
            return resp.json()
        return self._call_with_failover(f"POST {path or '/'}", call)
