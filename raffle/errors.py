from __future__ import annotations

from typing import Any, Dict


class RaffleError(Exception):
    """Base class for failures that abort and roll back a raffle operation."""

    code = "raffle_error"
    status_code = 400

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": str(self)}
        payload.update(self.details())
        return payload


class InsufficientFee(RaffleError):
    code = "insufficient_fee"

    def __init__(self, sent: int, required: int) -> None:
        super().__init__(f"sent {sent}, entrance fee is {required}")
        self.sent = sent
        self.required = required

    def details(self) -> Dict[str, Any]:
        return {"sent": str(self.sent), "required": str(self.required)}


class RoundNotOpen(RaffleError):
    code = "round_not_open"

    def __init__(self) -> None:
        super().__init__("raffle is calculating a winner")


class UpkeepNotNeeded(RaffleError):
    code = "upkeep_not_needed"

    def __init__(self, balance: int, participant_count: int, raffle_state: int) -> None:
        super().__init__(
            f"balance={balance} players={participant_count} state={int(raffle_state)}"
        )
        self.balance = balance
        self.participant_count = participant_count
        self.raffle_state = int(raffle_state)

    def details(self) -> Dict[str, Any]:
        return {
            "balance": str(self.balance),
            "participant_count": self.participant_count,
            "raffle_state": self.raffle_state,
        }


class PayoutFailed(RaffleError):
    code = "payout_failed"
    status_code = 409

    def __init__(self, winner: str, amount: int) -> None:
        super().__init__(f"transfer of {amount} to {winner} was rejected")
        self.winner = winner
        self.amount = amount

    def details(self) -> Dict[str, Any]:
        return {"winner": self.winner, "amount": str(self.amount)}


class OnlyCoordinatorCanFulfill(RaffleError):
    code = "only_coordinator_can_fulfill"
    status_code = 403

    def __init__(self, have: str, want: str) -> None:
        super().__init__(f"caller {have} is not the coordinator {want}")
        self.have = have
        self.want = want

    def details(self) -> Dict[str, Any]:
        return {"have": self.have, "want": self.want}


class UnexpectedRequest(RaffleError):
    code = "unexpected_request"
    status_code = 409

    def __init__(self, request_id: int, pending_request_id) -> None:
        super().__init__(f"request {request_id} is not the outstanding request ({pending_request_id})")
        self.request_id = request_id
        self.pending_request_id = pending_request_id

    def details(self) -> Dict[str, Any]:
        return {"request_id": self.request_id, "pending_request_id": self.pending_request_id}


class NothingToReset(RaffleError):
    code = "nothing_to_reset"
    status_code = 409

    def __init__(self) -> None:
        super().__init__("raffle is open; there is no stuck draw to reset")


class InsufficientFunds(RaffleError):
    code = "insufficient_funds"

    def __init__(self, account: str, balance: int, amount: int) -> None:
        super().__init__(f"{account} holds {balance}, cannot pay {amount}")
        self.account = account
        self.balance = balance
        self.amount = amount

    def details(self) -> Dict[str, Any]:
        return {"account": self.account, "balance": str(self.balance), "amount": str(self.amount)}


class CoordinatorError(RaffleError):
    code = "coordinator_error"


class InvalidSubscription(CoordinatorError):
    code = "invalid_subscription"
    status_code = 404

    def __init__(self, subscription_id) -> None:
        super().__init__(f"subscription {subscription_id} does not exist")
        self.subscription_id = subscription_id


class InvalidConsumer(CoordinatorError):
    code = "invalid_consumer"
    status_code = 403

    def __init__(self, subscription_id: int, consumer: str) -> None:
        super().__init__(f"{consumer} is not a consumer of subscription {subscription_id}")
        self.subscription_id = subscription_id
        self.consumer = consumer


class NonexistentRequest(CoordinatorError):
    code = "nonexistent_request"
    status_code = 404

    def __init__(self, request_id: int) -> None:
        super().__init__(f"request {request_id} is not pending")
        self.request_id = request_id


class InsufficientSubscriptionBalance(CoordinatorError):
    code = "insufficient_subscription_balance"
    status_code = 402

    def __init__(self, subscription_id: int, balance: int, payment: int) -> None:
        super().__init__(f"subscription {subscription_id} holds {balance}, fulfilment costs {payment}")
        self.subscription_id = subscription_id
        self.balance = balance
        self.payment = payment

    def details(self) -> Dict[str, Any]:
        return {"balance": str(self.balance), "payment": str(self.payment)}


class RaffleInvariantError(RuntimeError):
    """Raised when the round reaches a state the state machine cannot produce."""
