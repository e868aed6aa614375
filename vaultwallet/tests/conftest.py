"""
Shared fixtures for vaultwallet tests.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest


class RpcNode:
    """MockTransport handler answering Bitcoin Core JSON-RPC calls by method name."""

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[list], httpx.Response]] = {}
        self.calls: list[tuple[str, list]] = []

    def on(self, method: str, *responses: object) -> None:
        """Answer method with each scripted result in turn; the last one repeats."""
        queue = list(responses)

        def handler(params: list) -> httpx.Response:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(item, httpx.Response):
                return item
            return httpx.Response(200, json={"result": item, "error": None, "id": 1})

        self.handlers[method] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        self.calls.append((method, params))
        return self.handlers[method](params)

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]


@pytest.fixture
def rpc_node() -> RpcNode:
    return RpcNode()


@pytest.fixture
def make_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory
