from __future__ import annotations

import logging

import httpx

from timelock.adapters.horizon_http import HorizonHttpClient
from timelock.adapters.settlement_clients import (
    ExternalWalletSettlementClient,
    LocalKeySettlementClient,
    SimulatedSettlementClient,
)
from timelock.adapters.signing import ExternalSigner, HttpExternalSigner, LocalSigner, load_local_signer
from timelock.config import Settings, SigningMode
from timelock.domain.errors import ConfigurationError
from timelock.services.settlement import SettlementClient

logger = logging.getLogger(__name__)


def build_settlement_client(
    settings: Settings,
    *,
    local_signer: LocalSigner | None = None,
    external_signer: ExternalSigner | None = None,
    transport: httpx.BaseTransport | None = None,
) -> SettlementClient:
    errors = settings.signing_setup_errors()
    if errors:
        raise ConfigurationError("; ".join(errors))

    if settings.signing_mode == SigningMode.DRY_RUN:
        logger.info("settlement_client_built", extra={"extra": {"signing_mode": "dry_run"}})
        return SimulatedSettlementClient()

    if settings.signing_mode == SigningMode.LOCAL_KEY:
        if settings.local_signer_secret is None:
            raise ConfigurationError("LOCAL_SIGNER_SECRET is required when SIGNING_MODE=local_key")
        if local_signer is None:
            if not settings.local_signer:
                raise ConfigurationError("LOCAL_SIGNER is required when SIGNING_MODE=local_key")
            local_signer = load_local_signer(settings.local_signer)
    elif external_signer is None:
        if not settings.signer_url:
            raise ConfigurationError("SIGNER_URL is required when SIGNING_MODE=external_wallet")
        external_signer = HttpExternalSigner(
            settings.signer_url,
            timeout=settings.settlement_timeout_seconds,
            transport=transport,
        )

    horizon = HorizonHttpClient(
        settings.horizon_url,
        timeout=settings.settlement_timeout_seconds,
        transport=transport,
    )
    tx_timeout = int(settings.settlement_timeout_seconds)
    logger.info(
        "settlement_client_built",
        extra={
            "extra": {
                "signing_mode": str(settings.signing_mode),
                "horizon_url": settings.horizon_url,
            }
        },
    )
    if settings.signing_mode == SigningMode.LOCAL_KEY:
        return LocalKeySettlementClient(
            horizon,
            secret=settings.local_signer_secret,
            signer=local_signer,
            network_passphrase=settings.network_passphrase,
            tx_timeout_seconds=tx_timeout,
        )

    return ExternalWalletSettlementClient(
        horizon,
        signer=external_signer,
        network_passphrase=settings.network_passphrase,
        tx_timeout_seconds=tx_timeout,
    )
