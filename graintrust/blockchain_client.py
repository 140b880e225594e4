# graintrust/blockchain_client.py
"""
Client for the Fabric bridge.

The bridge exposes the chaincode as two opaque operations:

    POST /transactions/submit    {"fn": ..., "args": [...]}  -> {"txId": ..., "result": ...}
    POST /transactions/evaluate  {"fn": ..., "args": [...]}  -> {"result": ...}

A LedgerSession is opened for one orchestrator run (or one query) with a
given signing identity and is always closed on exit.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from graintrust.config import Settings
from graintrust.errors import (
    LedgerConflictError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from graintrust.models.domain import IdentityHandle, LedgerBatchRecord

logger = structlog.get_logger(__name__)

CREATE_BATCH = "createGrainBatch"
ADD_STAGE = "addStage"
QUERY_BATCH = "queryGrainBatch"
GET_HISTORY = "getGrainHistory"
VERIFY_IMAGE_HASH = "verifyImageHash"


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


class LedgerSession:
    def __init__(self, client: httpx.AsyncClient, identity: IdentityHandle, channel: str, chaincode: str, timeout: float):
        self.client = client
        self.identity = identity
        self.channel = channel
        self.chaincode = chaincode
        self.timeout = timeout

    async def _call(self, mode: str, fn: str, *args: Any) -> Optional[dict]:
        payload = {
            "channel": self.channel,
            "chaincode": self.chaincode,
            "fn": fn,
            "args": [str(a) for a in args],
        }
        try:
            resp = await self.client.post(f"/transactions/{mode}", json=payload)
        except httpx.TimeoutException:
            if mode == "submit":
                raise LedgerTimeoutError(fn, self.timeout)
            raise LedgerUnavailableError(f"Ledger query {fn} timed out", fn=fn)
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Ledger bridge unreachable: {e}", fn=fn)

        if resp.is_success:
            return resp.json()

        message = _error_message(resp)
        if resp.status_code == 409 or "already exists" in message.lower():
            raise LedgerConflictError(message, fn=fn)
        if resp.status_code == 404 or "does not exist" in message.lower():
            return None
        raise LedgerUnavailableError(f"Ledger {mode} {fn} failed: {message}", fn=fn, status=resp.status_code)

    async def submit(self, fn: str, *args: Any) -> dict:
        """Submits a transaction and waits for the commit."""
        body = await self._call("submit", fn, *args)
        if body is None:
            raise LedgerUnavailableError(f"Ledger submit {fn} rejected: record does not exist", fn=fn)
        return body

    async def evaluate(self, fn: str, *args: Any) -> Any:
        """Runs a read-only query; None when the ledger has no such record."""
        body = await self._call("evaluate", fn, *args)
        if body is None:
            return None
        return body.get("result")

    # ================= CHAINCODE OPERATIONS =================

    async def query_batch(self, batch_code: str) -> Optional[LedgerBatchRecord]:
        result = await self.evaluate(QUERY_BATCH, batch_code)
        if not result:
            return None
        return LedgerBatchRecord.from_ledger(result)

    async def create_batch(
        self,
        batch_code: str,
        farmer_name: str,
        crop_type: str,
        quantity: str,
        image_hash: str,
        location: str,
    ) -> dict:
        return await self.submit(CREATE_BATCH, batch_code, farmer_name, crop_type, quantity, image_hash, location)

    async def add_stage(self, batch_code: str, stage_name: str, image_hash: str, location: str) -> dict:
        return await self.submit(ADD_STAGE, batch_code, stage_name, image_hash, location)

    async def history(self, batch_code: str) -> list:
        return await self.evaluate(GET_HISTORY, batch_code) or []

    async def verify_image_hash(self, batch_code: str, stage_index: int, expected_hash: str) -> bool:
        result = await self.evaluate(VERIFY_IMAGE_HASH, batch_code, stage_index, expected_hash)
        return result is True or str(result).lower() == "true"


class LedgerGateway:
    """Opens scoped sessions against the bridge; holds no connection between runs."""

    def __init__(
        self,
        bridge_url: str,
        channel: str,
        chaincode: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bridge_url = bridge_url
        self.channel = channel
        self.chaincode = chaincode
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "LedgerGateway":
        return cls(
            bridge_url=settings.fabric_bridge_url,
            channel=settings.channel_name,
            chaincode=settings.chaincode_name,
            timeout=settings.ledger_timeout_seconds,
            transport=transport,
        )

    @asynccontextmanager
    async def session(self, identity: IdentityHandle) -> AsyncIterator[LedgerSession]:
        client = httpx.AsyncClient(
            base_url=self.bridge_url,
            timeout=httpx.Timeout(self.timeout),
            transport=self.transport,
            headers={"X-Ledger-Identity": identity.label, "X-Ledger-MSP": identity.msp_id},
        )
        logger.debug("ledger_session_opened", identity=identity.label)
        try:
            yield LedgerSession(client, identity, self.channel, self.chaincode, self.timeout)
        finally:
            await client.aclose()
            logger.debug("ledger_session_closed", identity=identity.label)
