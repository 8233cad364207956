from __future__ import annotations

import hashlib
import logging
from dataclasses import replace
from threading import Lock

from pydantic import SecretStr

from timelock.adapters.horizon_http import HorizonHttpClient
from timelock.adapters.signing import ExternalSigner, LocalSigner, UnsignedTransfer
from timelock.domain.errors import SettlementUnconfirmed
from timelock.services.settlement import SettlementReceipt, TransferRequest

logger = logging.getLogger(__name__)


class HorizonSettlementClient:
    """Shared flow: load sequence, sign, submit once, return the receipt."""

    def __init__(
        self,
        horizon: HorizonHttpClient,
        *,
        network_passphrase: str,
        tx_timeout_seconds: int = 30,
    ) -> None:
        self.horizon = horizon
        self._network_passphrase = network_passphrase
        self._tx_timeout_seconds = tx_timeout_seconds

    def _sign(self, transfer: UnsignedTransfer) -> str:
        raise NotImplementedError

    def transfer(self, request: TransferRequest) -> SettlementReceipt:
        sequence = self.horizon.load_sequence(request.source) + 1
        unsigned = UnsignedTransfer(
            source=request.source,
            destination=request.destination,
            amount=request.amount,
            memo=request.memo,
            sequence=sequence,
            network_passphrase=self._network_passphrase,
            timeout_seconds=self._tx_timeout_seconds,
        )
        envelope = self._sign(unsigned)
        receipt = self.horizon.submit_transaction(envelope)
        logger.info(
            "settlement_transfer_submitted",
            extra={
                "extra": {
                    "settlement_ref": receipt.settlement_ref,
                    "successful": receipt.successful,
                    "ledger": receipt.ledger,
                    "memo": request.memo,
                }
            },
        )
        return receipt

    def confirm(self, settlement_ref: str) -> SettlementReceipt:
        receipt = self.horizon.get_transaction(settlement_ref)
        if receipt is None:
            raise SettlementUnconfirmed(
                f"transaction {settlement_ref} is not known to the network yet",
                settlement_ref=settlement_ref,
            )
        payment = self.horizon.get_payment(receipt.settlement_ref)
        if payment is None:
            return receipt
        destination, amount = payment
        return replace(receipt, destination=destination, amount=amount)

    def close(self) -> None:
        self.horizon.close()


class LocalKeySettlementClient(HorizonSettlementClient):
    def __init__(
        self,
        horizon: HorizonHttpClient,
        *,
        secret: SecretStr,
        signer: LocalSigner,
        network_passphrase: str,
        tx_timeout_seconds: int = 30,
    ) -> None:
        super().__init__(
            horizon,
            network_passphrase=network_passphrase,
            tx_timeout_seconds=tx_timeout_seconds,
        )
        self._secret = secret
        self._signer = signer

    def _sign(self, transfer: UnsignedTransfer) -> str:
        return self._signer(transfer, self._secret.get_secret_value())


class ExternalWalletSettlementClient(HorizonSettlementClient):
    def __init__(
        self,
        horizon: HorizonHttpClient,
        *,
        signer: ExternalSigner,
        network_passphrase: str,
        tx_timeout_seconds: int = 30,
    ) -> None:
        super().__init__(
            horizon,
            network_passphrase=network_passphrase,
            tx_timeout_seconds=tx_timeout_seconds,
        )
        self._signer = signer

    def _sign(self, transfer: UnsignedTransfer) -> str:
        return self._signer.sign(transfer)

    def close(self) -> None:
        super().close()
        close = getattr(self._signer, "close", None)
        if callable(close):
            close()


class SimulatedSettlementClient:
    """Dry-run settlement: every transfer succeeds with a synthetic reference."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 0
        self.transfers: dict[str, TransferRequest] = {}

    def transfer(self, request: TransferRequest) -> SettlementReceipt:
        with self._lock:
            self._counter += 1
            digest = hashlib.sha256(
                f"{self._counter}|{request.source}|{request.destination}|{request.amount}|{request.memo}".encode()
            ).hexdigest()
            settlement_ref = f"sim-{digest[:40]}"
            self.transfers[settlement_ref] = request
        logger.info(
            "simulated_transfer",
            extra={
                "extra": {
                    "settlement_ref": settlement_ref,
                    "amount": str(request.amount),
                    "memo": request.memo,
                }
            },
        )
        return SettlementReceipt(
            settlement_ref=settlement_ref,
            source=request.source,
            memo=request.memo,
            destination=request.destination,
            amount=request.amount,
        )

    def confirm(self, settlement_ref: str) -> SettlementReceipt:
        with self._lock:
            request = self.transfers.get(settlement_ref)
        if request is None:
            # Refs produced outside this process carry no payment to check.
            return SettlementReceipt(settlement_ref=settlement_ref)
        return SettlementReceipt(
            settlement_ref=settlement_ref,
            source=request.source,
            memo=request.memo,
            destination=request.destination,
            amount=request.amount,
        )

    def close(self) -> None:
        return None
