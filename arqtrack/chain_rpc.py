from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass


@dataclass(frozen=True)
class ChainRPC:
    url: str
    timeout_s: int = 20

    def _call(self, method: str, params: list) -> object:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                result = json.loads(resp.read().decode("utf-8"))
        except urllib.error.URLError as e:
            raise RuntimeError(f"RPC request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise RuntimeError(f"RPC invalid JSON response: {e}") from e

        if "error" in result:
            raise RuntimeError(f"RPC error: {result['error']}")
        if "result" not in result:
            raise RuntimeError(f"RPC missing result: {result}")
        return result["result"]

    def get_balance_wei(self, address: str) -> int:
        """
        Read the native balance (in wei) of an account at the latest block.
        Raises RuntimeError if the RPC call fails.
        """
        value = self._call("eth_getBalance", [address, "latest"])
        try:
            return int(str(value), 16)
        except ValueError as e:
            raise RuntimeError(f"RPC invalid balance value: {value}") from e
