import random
import unittest
from unittest import mock

from sqlalchemy import func, select, update
from web3 import Web3

from raffle.errors import (
    InsufficientFee,
    InsufficientFunds,
    NothingToReset,
    OnlyCoordinatorCanFulfill,
    PayoutFailed,
    RaffleInvariantError,
    RoundNotOpen,
    UnexpectedRequest,
    UpkeepNotNeeded,
)
from raffle.models import RaffleEntry, RaffleRound, RaffleState, RandomnessRequest, RequestStatus
from raffle.services.deployment import build_raffle, deploy

from .support import (
    FEE,
    INTERVAL,
    OUTSIDER,
    PLAYER_A,
    PLAYER_B,
    PLAYER_C,
    START,
    RaffleTestCase,
    make_settings,
)


class DeploymentTests(RaffleTestCase):
    def test_deploy_captures_configuration_once(self) -> None:
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_entrance_fee(), FEE)
            self.assertEqual(raffle.get_interval(), INTERVAL)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
            self.assertEqual(raffle.get_last_timestamp(), START)
            self.assertEqual(raffle.get_num_words(), 1)
            self.assertEqual(raffle.get_request_confirmations(), 3)
            self.assertIsNone(raffle.get_recent_winner())

        changed = self.settings.__class__(entrance_fee=FEE * 5, interval=1)
        with self.session_scope() as session:
            deploy(session, changed, clock=self.clock)
            round_ = session.get(RaffleRound, 1)
            self.assertEqual(round_.entrance_fee, FEE)
            self.assertEqual(round_.interval, INTERVAL)

    def test_deploy_registers_raffle_as_consumer(self) -> None:
        with self.session_scope() as session:
            raffle = self.raffle(session)
            subscription_id = session.get(RaffleRound, 1).subscription_id
            self.assertTrue(raffle.coordinator.consumer_is_added(subscription_id, raffle.address))

    def test_deployed_addresses_outlive_changed_settings(self) -> None:
        self.fund(PLAYER_A)
        self.enter(PLAYER_A)
        request_id = self.request_draw()

        moved = make_settings(
            raffle_address=Web3.to_checksum_address("0x" + "08" * 20),
            coordinator_address=Web3.to_checksum_address("0x" + "09" * 20),
        )
        with self.session_scope() as session:
            deploy(session, moved, clock=self.clock)
            raffle = build_raffle(session, moved, clock=self.clock)
            self.assertEqual(raffle.address, Web3.to_checksum_address(self.settings.raffle_address))
            self.assertEqual(
                raffle.coordinator.address, Web3.to_checksum_address(self.settings.coordinator_address)
            )
            self.assertEqual(raffle.get_balance(), FEE)
            self.assertTrue(raffle.coordinator.fulfill_random_words(request_id, raffle))
            self.assertEqual(raffle.get_recent_winner(), PLAYER_A)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
        self.assertEqual(self.balance_of(PLAYER_A), 10 * FEE)


class AdmissionTests(RaffleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.fund(PLAYER_A, PLAYER_B)

    def test_enter_records_player_and_moves_fee(self) -> None:
        self.enter(PLAYER_A)

        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_players(), [PLAYER_A])
            self.assertEqual(raffle.get_player(0), PLAYER_A)
            self.assertEqual(raffle.get_balance(), FEE)
            events = raffle.ledger.events(name="Entered")
            self.assertEqual(len(events), 1)
            self.assertEqual(events[0].get_args(), {"player": PLAYER_A})
        self.assertEqual(self.balance_of(PLAYER_A), 9 * FEE)

    def test_enter_keeps_overpayment(self) -> None:
        self.enter(PLAYER_A, amount=FEE * 3)
        with self.session_scope() as session:
            self.assertEqual(self.raffle(session).get_balance(), FEE * 3)

    def test_enter_below_fee_is_rejected(self) -> None:
        with self.assertRaises(InsufficientFee):
            self.enter(PLAYER_A, amount=FEE - 1)
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_number_of_players(), 0)
            self.assertEqual(raffle.get_balance(), 0)

    def test_enter_without_funds_rolls_back(self) -> None:
        with self.assertRaises(InsufficientFunds):
            self.enter(OUTSIDER)
        with self.session_scope() as session:
            self.assertEqual(self.raffle(session).get_number_of_players(), 0)

    def test_repeat_entries_get_separate_slots(self) -> None:
        self.enter(PLAYER_A, PLAYER_B, PLAYER_A)
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_players(), [PLAYER_A, PLAYER_B, PLAYER_A])
            self.assertEqual(raffle.get_balance(), 3 * FEE)

    def test_get_player_out_of_range(self) -> None:
        with self.session_scope() as session:
            with self.assertRaises(IndexError):
                self.raffle(session).get_player(0)

    def test_entry_rejected_while_calculating(self) -> None:
        self.enter(PLAYER_A)
        self.request_draw()

        with self.assertRaises(RoundNotOpen):
            self.enter(PLAYER_B)

        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.CALCULATING)
            self.assertEqual(raffle.get_players(), [PLAYER_A])
            self.assertEqual(raffle.get_balance(), FEE)
        self.assertEqual(self.balance_of(PLAYER_B), 10 * FEE)


class UpkeepTests(RaffleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.fund(PLAYER_A)

    def check(self) -> bool:
        with self.session_scope() as session:
            upkeep_needed, perform_data = self.raffle(session).check_upkeep()
        self.assertEqual(perform_data, b"")
        return upkeep_needed

    def assert_upkeep_not_needed(self, balance: int, players: int, state: RaffleState) -> None:
        with self.assertRaises(UpkeepNotNeeded) as ctx:
            with self.session_scope() as session:
                self.raffle(session).perform_upkeep()
        self.assertEqual(ctx.exception.balance, balance)
        self.assertEqual(ctx.exception.participant_count, players)
        self.assertEqual(ctx.exception.raffle_state, int(state))

    def test_not_needed_without_players(self) -> None:
        self.clock.advance(INTERVAL + 1)
        self.assertFalse(self.check())
        self.assert_upkeep_not_needed(0, 0, RaffleState.OPEN)
        with self.session_scope() as session:
            self.assertEqual(self.raffle(session).get_raffle_state(), RaffleState.OPEN)

    def test_not_needed_before_interval(self) -> None:
        self.enter(PLAYER_A)
        self.clock.advance(INTERVAL - 1)
        self.assertFalse(self.check())
        self.assert_upkeep_not_needed(FEE, 1, RaffleState.OPEN)

    def test_needed_exactly_at_interval(self) -> None:
        self.enter(PLAYER_A)
        self.clock.advance(INTERVAL)
        self.assertTrue(self.check())

    def test_balance_alone_is_not_enough(self) -> None:
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertTrue(raffle.ledger.transfer(PLAYER_A, raffle.address, FEE))
        self.clock.advance(INTERVAL + 1)
        self.assertFalse(self.check())
        self.assert_upkeep_not_needed(FEE, 0, RaffleState.OPEN)

    def test_not_needed_while_calculating(self) -> None:
        self.enter(PLAYER_A)
        self.request_draw()
        self.assertFalse(self.check())
        self.assert_upkeep_not_needed(FEE, 1, RaffleState.CALCULATING)

        with self.session_scope() as session:
            pending = session.scalar(
                select(func.count(RandomnessRequest.id)).where(
                    RandomnessRequest.status == int(RequestStatus.PENDING)
                )
            )
        self.assertEqual(pending, 1)

    def test_check_upkeep_has_no_side_effects(self) -> None:
        self.enter(PLAYER_A)
        self.clock.advance(INTERVAL + 1)
        for _ in range(3):
            self.assertTrue(self.check())
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
            self.assertEqual(raffle.coordinator.pending_requests(), [])

    def test_perform_upkeep_requests_one_word_with_three_confirmations(self) -> None:
        self.enter(PLAYER_A)
        request_id = self.request_draw()

        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.CALCULATING)
            self.assertEqual(raffle.get_pending_request_id(), request_id)
            request = raffle.coordinator.get_request(request_id)
            self.assertEqual(request.num_words, 1)
            self.assertEqual(request.request_confirmations, 3)
            self.assertEqual(request.callback_gas_limit, self.settings.callback_gas_limit)
            self.assertEqual(request.key_hash, self.settings.key_hash)
            self.assertEqual(request.consumer, raffle.address)
            events = raffle.ledger.events(name="RequestedRaffleWinner")
            self.assertEqual(events[0].get_args(), {"request_id": request_id})


class FulfillmentTests(RaffleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.fund(PLAYER_A, PLAYER_B, PLAYER_C)

    def fulfill(self, request_id: int, word: int) -> str:
        with self.session_scope() as session:
            raffle = self.raffle(session)
            raffle.raw_fulfill_random_words(raffle.coordinator.address, request_id, [word])
            return raffle.get_recent_winner()

    def test_single_player_round(self) -> None:
        self.enter(PLAYER_A)
        with self.assertRaises(InsufficientFee):
            self.enter(PLAYER_B, amount=FEE // 2)
        request_id = self.request_draw()

        winner = self.fulfill(request_id, 7)

        self.assertEqual(winner, PLAYER_A)
        self.assertEqual(self.balance_of(PLAYER_A), 10 * FEE)
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
            self.assertEqual(raffle.get_players(), [])
            self.assertEqual(raffle.get_balance(), 0)
            self.assertEqual(raffle.get_last_timestamp(), self.clock.now)
            self.assertIsNone(raffle.get_pending_request_id())
            events = raffle.ledger.events(name="WinnerPicked")
            self.assertEqual(events[0].get_args(), {"winner": PLAYER_A})

    def test_index_is_word_modulo_players(self) -> None:
        self.enter(PLAYER_A, PLAYER_B, PLAYER_C)
        request_id = self.request_draw()

        winner = self.fulfill(request_id, 5)

        self.assertEqual(winner, PLAYER_C)
        self.assertEqual(self.balance_of(PLAYER_C), 9 * FEE + 3 * FEE)

    def test_only_coordinator_can_fulfill(self) -> None:
        self.enter(PLAYER_A)
        request_id = self.request_draw()

        with self.assertRaises(OnlyCoordinatorCanFulfill):
            with self.session_scope() as session:
                self.raffle(session).raw_fulfill_random_words(OUTSIDER, request_id, [1])

        with self.session_scope() as session:
            self.assertEqual(self.raffle(session).get_raffle_state(), RaffleState.CALCULATING)

    def test_unexpected_request_is_rejected(self) -> None:
        self.enter(PLAYER_A)
        request_id = self.request_draw()
        with self.assertRaises(UnexpectedRequest):
            self.fulfill(request_id + 1, 3)

    def test_payout_failure_rolls_back_everything(self) -> None:
        self.enter(PLAYER_A, PLAYER_B)
        request_id = self.request_draw()
        with self.session_scope() as session:
            self.raffle(session).ledger.set_accepts_transfers(PLAYER_B, False)

        with self.session_scope() as session:
            raffle = self.raffle(session)
            before = (
                raffle.get_raffle_state(),
                raffle.get_players(),
                raffle.get_last_timestamp(),
                raffle.get_recent_winner(),
                raffle.get_balance(),
            )

        self.clock.advance(30)
        with self.assertRaises(PayoutFailed) as ctx:
            self.fulfill(request_id, 1)
        self.assertEqual(ctx.exception.winner, PLAYER_B)

        with self.session_scope() as session:
            raffle = self.raffle(session)
            after = (
                raffle.get_raffle_state(),
                raffle.get_players(),
                raffle.get_last_timestamp(),
                raffle.get_recent_winner(),
                raffle.get_balance(),
            )
            self.assertEqual(raffle.ledger.events(name="WinnerPicked"), [])
            self.assertEqual(raffle.get_pending_request_id(), request_id)
        self.assertEqual(before, after)
        self.assertEqual(after[0], RaffleState.CALCULATING)

    def test_fulfill_with_no_players_is_fatal(self) -> None:
        self.enter(PLAYER_A)
        request_id = self.request_draw()
        with self.session_scope() as session:
            session.query(RaffleEntry).delete()

        with self.assertRaises(RaffleInvariantError):
            self.fulfill(request_id, 1)

    def test_recipient_reentering_during_payout_sees_clean_round(self) -> None:
        self.enter(PLAYER_A)
        request_id = self.request_draw()
        observed = []

        with self.session_scope() as session:
            raffle = self.raffle(session)

            def on_receive(amount: int) -> bool:
                observed.append((raffle.get_raffle_state(), raffle.get_number_of_players(), amount))
                raffle.enter(PLAYER_A, FEE)
                return True

            raffle.ledger.register_receiver(PLAYER_A, on_receive)
            raffle.raw_fulfill_random_words(raffle.coordinator.address, request_id, [0])

        self.assertEqual(observed, [(RaffleState.OPEN, 0, FEE)])
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_players(), [PLAYER_A])
            self.assertEqual(raffle.get_balance(), FEE)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)

    def test_next_round_opens_after_fulfillment(self) -> None:
        self.enter(PLAYER_A, PLAYER_B)
        request_id = self.request_draw()
        self.fulfill(request_id, 0)

        self.enter(PLAYER_C)
        with self.session_scope() as session:
            upkeep_needed, _ = self.raffle(session).check_upkeep()
        self.assertFalse(upkeep_needed)
        second = self.request_draw()
        self.assertNotEqual(second, request_id)
        self.assertEqual(self.fulfill(second, 12345), PLAYER_C)


class ForceResetTests(RaffleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.fund(PLAYER_A)

    def test_reset_requires_calculating_round(self) -> None:
        with self.assertRaises(NothingToReset):
            with self.session_scope() as session:
                self.raffle(session).force_reset("ops")

    def test_reset_reopens_round_and_cancels_request(self) -> None:
        self.enter(PLAYER_A)
        request_id = self.request_draw()

        with self.session_scope() as session:
            cancelled = self.raffle(session).force_reset("ops")
        self.assertEqual(cancelled, request_id)

        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
            self.assertEqual(raffle.get_players(), [PLAYER_A])
            self.assertEqual(raffle.get_balance(), FEE)
            self.assertEqual(raffle.coordinator.pending_requests(), [])
            upkeep_needed, _ = raffle.check_upkeep()
            self.assertTrue(upkeep_needed)

        with self.assertRaises(UnexpectedRequest):
            with self.session_scope() as session:
                raffle = self.raffle(session)
                raffle.raw_fulfill_random_words(raffle.coordinator.address, request_id, [0])


class RoundLockingTests(RaffleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.fund(PLAYER_A)

    def _locked_reads(self, get) -> int:
        return sum(
            1
            for call in get.call_args_list
            if call.args[0] is RaffleRound and call.kwargs.get("with_for_update")
        )

    def test_state_changes_lock_the_round_row(self) -> None:
        with self.session_scope() as session:
            raffle = self.raffle(session)
            with mock.patch.object(session, "get", wraps=session.get) as get:
                raffle.enter(PLAYER_A, FEE)
                self.assertEqual(self._locked_reads(get), 1)

                raffle.check_upkeep()
                raffle.get_players()
                self.assertEqual(self._locked_reads(get), 1)

                self.clock.advance(INTERVAL + 1)
                request_id = raffle.perform_upkeep()
                self.assertEqual(self._locked_reads(get), 2)

                raffle.coordinator.fulfill_random_words(request_id, raffle)
                self.assertEqual(self._locked_reads(get), 3)

    def test_force_reset_locks_the_round_row(self) -> None:
        self.enter(PLAYER_A)
        self.request_draw()
        with self.session_scope() as session:
            raffle = self.raffle(session)
            with mock.patch.object(session, "get", wraps=session.get) as get:
                raffle.force_reset("ops")
            self.assertEqual(self._locked_reads(get), 1)

    def test_locked_read_refreshes_a_stale_round(self) -> None:
        self.enter(PLAYER_A)
        with self.session_scope() as session:
            raffle = self.raffle(session)
            self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
            # Another transaction moved the round on after this session loaded it.
            session.execute(
                update(RaffleRound)
                .where(RaffleRound.id == 1)
                .values(state=int(RaffleState.CALCULATING))
                .execution_options(synchronize_session=False)
            )
            with self.assertRaises(RoundNotOpen):
                raffle.enter(PLAYER_A, FEE)


class WinnerDistributionTests(RaffleTestCase):
    def test_winner_index_is_uniform(self) -> None:
        players = [PLAYER_A, PLAYER_B, PLAYER_C]
        self.fund(*players, amount=10**9)
        rng = random.Random(20240611)
        trials = 600
        wins = {player: 0 for player in players}

        for _ in range(trials):
            self.enter(*players)
            request_id = self.request_draw()
            with self.session_scope() as session:
                raffle = self.raffle(session)
                raffle.raw_fulfill_random_words(
                    raffle.coordinator.address, request_id, [rng.getrandbits(256)]
                )
                winner = raffle.get_recent_winner()
                self.assertEqual(raffle.get_number_of_players(), 0)
                self.assertEqual(raffle.get_raffle_state(), RaffleState.OPEN)
            wins[winner] += 1

        self.assertEqual(sum(wins.values()), trials)
        expected = trials / len(players)
        chi_square = sum((count - expected) ** 2 / expected for count in wins.values())
        # 2 degrees of freedom, p = 0.001
        self.assertLess(chi_square, 13.82)


if __name__ == "__main__":
    unittest.main()
