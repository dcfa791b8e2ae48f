"""
Clients for the external settlement layer.

The settlement layer is an account-based token ledger reached through
submit-and-poll calls. Every transfer carries an idempotency key so that a
transfer whose acknowledgement was lost can be looked up later instead of
being blindly resubmitted.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from typing import Optional

import requests

from .errors import SettlementAckLost, SettlementError, SettlementTransferFailed
from .models import TransferReceipt


class SettlementClient(ABC):
    supports_transfer_lookup: bool = False

    @abstractmethod
    async def transfer(self, recipient: str, amount: int, idempotency_key: str) -> TransferReceipt:
        """Submit one transfer. Raises SettlementTransferFailed or SettlementAckLost."""

    @abstractmethod
    async def balance_of(self, recipient: str) -> int: ...

    async def find_transfer(self, idempotency_key: str) -> Optional[TransferReceipt]:
        raise NotImplementedError(f"{type(self).__name__} cannot look up transfers")


class SimulatedSettlementLedger(SettlementClient):
    """In-process stand-in for the token ledger, used by the dev server and tests."""

    supports_transfer_lookup = True

    def __init__(self, starting_balances: Optional[dict[str, int]] = None):
        self.balances: dict[str, int] = dict(starting_balances or {})
        self.transfers: dict[str, TransferReceipt] = {}
        self.transfer_log: list[tuple[str, int, str]] = []
        self._tx_counter = itertools.count(1)

    async def transfer(self, recipient: str, amount: int, idempotency_key: str) -> TransferReceipt:
        if amount <= 0:
            raise SettlementTransferFailed(f"Transfer amount must be positive, got {amount}")
        existing = self.transfers.get(idempotency_key)
        if existing is not None:
            return existing
        receipt = TransferReceipt(tx_ref=f"simulated_{next(self._tx_counter)}", accepted=True)
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        self.transfers[idempotency_key] = receipt
        self.transfer_log.append((recipient, amount, idempotency_key))
        return receipt

    async def balance_of(self, recipient: str) -> int:
        return self.balances.get(recipient, 0)

    async def find_transfer(self, idempotency_key: str) -> Optional[TransferReceipt]:
        return self.transfers.get(idempotency_key)


class HttpSettlementClient(SettlementClient):
    """
    Client for a settlement gateway exposing:

    - ``POST /transfers`` with an ``Idempotency-Key`` header
    - ``GET /transfers/{key}``
    - ``GET /balances/{address}``

    Blocking ``requests`` calls run in a worker thread.
    """

    supports_transfer_lookup = True

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    async def transfer(self, recipient: str, amount: int, idempotency_key: str) -> TransferReceipt:
        return await asyncio.to_thread(self._transfer, recipient, amount, idempotency_key)

    async def balance_of(self, recipient: str) -> int:
        return await asyncio.to_thread(self._balance_of, recipient)

    async def find_transfer(self, idempotency_key: str) -> Optional[TransferReceipt]:
        return await asyncio.to_thread(self._find_transfer, idempotency_key)

    def _transfer(self, recipient: str, amount: int, idempotency_key: str) -> TransferReceipt:
        try:
            response = self.session.post(
                f"{self.base_url}/transfers",
                json={"recipient": recipient, "amount": amount},
                headers={"Idempotency-Key": idempotency_key},
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectTimeout as e:
            raise SettlementTransferFailed(f"Could not reach settlement gateway: {e}") from e
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise SettlementAckLost(f"No acknowledgement for transfer {idempotency_key}: {e}") from e

        if response.status_code >= 500:
            raise SettlementAckLost(
                f"Settlement gateway returned {response.status_code} for transfer {idempotency_key}"
            )
        if response.status_code >= 400:
            raise SettlementTransferFailed(
                f"Settlement gateway rejected transfer {idempotency_key}: "
                f"{response.status_code} {response.text}"
            )
        return self._receipt(response.json())

    def _find_transfer(self, idempotency_key: str) -> Optional[TransferReceipt]:
        response = self._get(f"/transfers/{idempotency_key}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return self._receipt(response.json())

    def _balance_of(self, recipient: str) -> int:
        response = self._get(f"/balances/{recipient}")
        self._raise_for_status(response)
        return int(response.json()["balance"])

    def _get(self, path: str) -> requests.Response:
        try:
            return self.session.get(f"{self.base_url}{path}", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise SettlementError(f"Settlement gateway request {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.status_code >= 400:
            raise SettlementError(
                f"Settlement gateway returned {response.status_code}: {response.text}"
            )

    @staticmethod
    def _receipt(payload: dict) -> TransferReceipt:
        return TransferReceipt(tx_ref=payload.get("tx_ref"), accepted=bool(payload.get("accepted", False)))
