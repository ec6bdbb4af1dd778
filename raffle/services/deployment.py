from __future__ import annotations

import logging
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from ..config import RaffleSettings
from ..models import RaffleRound, RaffleState
from .coordinator import RandomnessCoordinator
from .ledger import Ledger, ReceiveHook
from .raffle import Clock, Raffle, system_clock

logger = logging.getLogger("chainraffle.deployment")


def build_raffle(
    session: Session,
    settings: RaffleSettings,
    clock: Optional[Clock] = None,
    receivers: Optional[Mapping[str, ReceiveHook]] = None,
) -> Raffle:
    """Wire a raffle to its ledger and coordinator.

    Once deployed, the raffle and coordinator addresses come from the round
    row; ``settings`` only supplies them for the initial deployment.
    """
    deployed = session.get(RaffleRound, 1)
    if deployed is not None:
        raffle_address = deployed.raffle_address
        coordinator_address = deployed.coordinator_address
    else:
        raffle_address = settings.raffle_address
        coordinator_address = settings.coordinator_address

    ledger = Ledger(session, receivers=receivers)
    coordinator = RandomnessCoordinator(
        ledger,
        coordinator_address,
        base_fee=settings.coordinator_base_fee,
        gas_price_link=settings.coordinator_gas_price_link,
    )
    return Raffle(settings, ledger, coordinator, clock=clock, address=raffle_address)


def deploy(session: Session, settings: RaffleSettings, clock: Optional[Clock] = None) -> RaffleRound:
    """Construct the raffle once; later calls return the existing round unchanged.

    When no subscription id is configured, a subscription is created on the
    local coordinator, funded, and the raffle registered as its consumer.
    """
    existing = session.get(RaffleRound, 1)
    if existing is not None:
        return existing

    clock = clock or system_clock
    raffle = build_raffle(session, settings, clock=clock)
    coordinator = raffle.coordinator

    subscription_id = settings.subscription_id
    if subscription_id is None:
        subscription_id = coordinator.create_subscription(owner=raffle.address)
        coordinator.fund_subscription(subscription_id, settings.subscription_fund_amount)
        logger.info("Created local subscription %s", subscription_id)
    if not coordinator.consumer_is_added(subscription_id, raffle.address):
        coordinator.add_consumer(subscription_id, raffle.address)

    round_ = RaffleRound(
        id=1,
        raffle_address=raffle.address,
        state=int(RaffleState.OPEN),
        last_timestamp=clock(),
        recent_winner=None,
        pending_request_id=None,
        entrance_fee=settings.entrance_fee,
        interval=settings.interval,
        coordinator_address=coordinator.address,
        key_hash=settings.key_hash,
        subscription_id=subscription_id,
        callback_gas_limit=settings.callback_gas_limit,
    )
    session.add(round_)
    session.flush()
    logger.info(
        "Raffle %s deployed: fee=%s interval=%ss subscription=%s",
        raffle.address,
        settings.entrance_fee,
        settings.interval,
        subscription_id,
    )
    return round_
