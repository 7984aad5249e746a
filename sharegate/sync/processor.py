"""
Trade Processor

Turns one decoded trade event into a ledger mutation plus the moderation
requests implied by the resulting balance:
- Buy:  share_amount += amount; unrestrict a banned, bound trader whose
        balance is now positive.
- Sell: share_amount -= amount; restrict a bound trader whose balance is
        now exactly zero.

Predicates look at the balance after the mutation, not at the event, so a
zero-amount event is still evaluated. Events carrying an event_key are
applied at most once; the marker is written in the same transaction as
the balance change.

Within one batch the ban flag is read through pending_bans, the ban state
implied by requests already queued earlier in the same batch. The stored
flag only changes once the dispatcher confirms an action after commit.
"""

import logging
from typing import Dict, Optional, Tuple

from ..persistence import ShareLedgerStore
from ..types import (
    DecodedTradeEvent,
    IdentityBinding,
    ModerationAction,
    ModerationRequest,
    TradeOutcome,
)


PendingBans = Dict[Tuple[str, str], bool]


class TradeProcessor:
    """
    Applies trade events to the share ledger.

    apply() is synchronous and is meant to run inside the sync engine's
    batch transaction; the caller dispatches the returned requests after
    commit.
    """

    def __init__(self, store: ShareLedgerStore):
        self._store = store
        self._logger = logging.getLogger("TradeProcessor")
        self._stats = {
            "buys": 0,
            "sells": 0,
            "duplicates": 0,
            "missing_rows": 0,
            "restricts": 0,
            "unrestricts": 0,
        }

    def apply(self, event: DecodedTradeEvent,
              pending_bans: Optional[PendingBans] = None) -> TradeOutcome:
        """
        Apply one event. Returns the outcome with any moderation requests.

        pending_bans, when given, is read for the ban state of the trader
        and updated with every request produced here.
        """
        if event.event_key and not self._store.mark_event_processed(event.event_key, event.chain_id):
            self._stats["duplicates"] += 1
            self._logger.debug(f"Already processed {event.event_key}, skipping")
            return TradeOutcome(
                applied=False,
                balance=self._store.get_share_amount(event.trader, event.subject, event.chain_id),
            )

        if event.is_buy:
            outcome = self._apply_buy(event, pending_bans)
        else:
            outcome = self._apply_sell(event, pending_bans)

        if pending_bans is not None:
            for request in outcome.requests:
                pending_bans[(request.address, request.chain_id)] = (
                    request.action == ModerationAction.RESTRICT
                )
        return outcome

    @staticmethod
    def _is_banned(identity: IdentityBinding, pending_bans: Optional[PendingBans]) -> bool:
        if pending_bans is not None:
            return pending_bans.get((identity.address, identity.chain_id), identity.is_banned)
        return identity.is_banned

    def _apply_buy(self, event: DecodedTradeEvent, pending_bans: Optional[PendingBans]) -> TradeOutcome:
        self._stats["buys"] += 1
        balance = self._store.add_shares(event.trader, event.subject, event.chain_id, event.share_amount)
        self._logger.info(
            f"[{event.chain_id}] {event.trader} bought {event.share_amount} of {event.subject} "
            f"(balance {balance})"
        )

        outcome = TradeOutcome(applied=True, balance=balance)
        identity = self._store.get_identity(event.trader, event.chain_id)
        if identity is not None and balance > 0 and self._is_banned(identity, pending_bans):
            self._stats["unrestricts"] += 1
            outcome.requests.append(ModerationRequest(
                subject=event.subject,
                chain_id=event.chain_id,
                address=identity.address,
                messaging_identity=identity.messaging_identity,
                action=ModerationAction.UNRESTRICT,
            ))
        return outcome

    def _apply_sell(self, event: DecodedTradeEvent, pending_bans: Optional[PendingBans]) -> TradeOutcome:
        self._stats["sells"] += 1
        balance = self._store.remove_shares(event.trader, event.subject, event.chain_id, event.share_amount)
        if balance is None:
            self._stats["missing_rows"] += 1
            self._logger.warning(
                f"[{event.chain_id}] Sell without ledger row: trader={event.trader}, subject={event.subject}"
            )
            return TradeOutcome(applied=True, balance=None)

        self._logger.info(
            f"[{event.chain_id}] {event.trader} sold {event.share_amount} of {event.subject} "
            f"(balance {balance})"
        )

        outcome = TradeOutcome(applied=True, balance=balance)
        if balance == 0:
            identity = self._store.get_identity(event.trader, event.chain_id)
            if identity is not None:
                self._stats["restricts"] += 1
                self._logger.info(f"{event.trader} has 0 shares of {event.subject}, restricting")
                outcome.requests.append(ModerationRequest(
                    subject=event.subject,
                    chain_id=event.chain_id,
                    address=identity.address,
                    messaging_identity=identity.messaging_identity,
                    action=ModerationAction.RESTRICT,
                ))
        return outcome

    def get_stats(self) -> Dict:
        return dict(self._stats)
