"""
Ledger node RPC client (Nano-style JSON RPC over HTTP)
"""
import logging
from typing import Dict, List, Optional

import requests

from common.error_handling import UpstreamUnavailableError
from common.schemas import IncomingTransfer, LedgerScan

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 100
RECEIVABLE_PAGE_SIZE = 100


class NodeClient:
    """Reports transfers addressed to an account.

    Pocketed receives come from ``account_history`` walked forward from the
    last cursor; sends that nobody has pocketed yet come from ``receivable``.
    Both are keyed by the hash of the *send* block, so a transfer reported
    first as receivable and later as a receive is the same transfer.
    """

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _rpc(self, payload: Dict) -> Dict:
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamUnavailableError(f"node rpc {payload['action']} failed", original_error=e)
        if "error" in data:
            if data["error"] == "Account not found":
                return {}
            raise UpstreamUnavailableError(f"node rpc {payload['action']} error: {data['error']}")
        return data

    def account_history(self, account: str, since_cursor: Optional[str]) -> LedgerScan:
        """Receives after since_cursor. The cursor advances past every block read, whatever its type."""
        payload = {
            "action": "account_history",
            "account": account,
            "count": str(HISTORY_PAGE_SIZE),
            "raw": True,
            "reverse": True,
        }
        if since_cursor:
            payload["head"] = since_cursor
            payload["offset"] = "1"
        history = self._rpc(payload).get("history") or []

        scan = LedgerScan(cursor=history[-1]["hash"] if history else None)
        for block in history:
            if block.get("subtype", block.get("type")) != "receive":
                continue
            source = block.get("link") if block.get("type") == "state" else block.get("source")
            scan.transfers.append(IncomingTransfer(
                amount=int(block["amount"]),
                block_hash=source or block["hash"],
            ))
        return scan

    def receivable(self, account: str) -> List[IncomingTransfer]:
        blocks = self._rpc({
            "action": "receivable",
            "account": account,
            "count": str(RECEIVABLE_PAGE_SIZE),
            "source": True,
        }).get("blocks") or {}
        return [
            IncomingTransfer(amount=int(info["amount"]), block_hash=send_hash)
            for send_hash, info in blocks.items()
        ]

    def query_incoming(self, account: str, since_cursor: Optional[str] = None) -> LedgerScan:
        scan = self.account_history(account, since_cursor)
        scan.transfers.extend(self.receivable(account))
        logger.debug(f"Node reported {len(scan.transfers)} incoming transfer(s) for {account}, cursor {scan.cursor}")
        return scan
