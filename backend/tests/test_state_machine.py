"""
Quote state machine tests: adjacency table, guards, handlers and history
"""
from decimal import Decimal

import pytest

from finance_core.domain import LineItem, Quote, QuoteStatus
from finance_core.errors import InvalidTransition
from finance_core.financial_precision import Money
from finance_core.state_machine import quote_state_machine


def make_quote(status=QuoteStatus.DRAFT, with_lines=True):
    lines = [
        LineItem(
            line_number=1,
            description="Labour",
            quantity=Decimal("10"),
            unit_price=Money.exact(Decimal("500.00"), "NZD"),
            tax_rate=Decimal("0.15"),
        )
    ] if with_lines else []
    return Quote(
        id="q-1",
        organization_id="org-1",
        customer_id="cust-1",
        title="Kitchen refit",
        currency="NZD",
        tax_rate=Decimal("0.15"),
        created_by="user-1",
        status=status,
        line_items=lines,
    )


class TestAdjacency:
    @pytest.mark.parametrize("src, targets", [
        ("draft", {"pending", "cancelled"}),
        ("pending", {"approved", "rejected", "cancelled"}),
        ("approved", {"sent"}),
        ("sent", {"accepted", "rejected"}),
        ("accepted", set()),
        ("rejected", set()),
        ("cancelled", set()),
    ])
    def test_allowed_targets(self, src, targets):
        assert set(quote_state_machine.get_allowed_transitions(src)) == targets

    def test_edges_accept_enums_and_strings(self):
        assert quote_state_machine.can_transition(QuoteStatus.APPROVED, "sent")
        assert not quote_state_machine.can_transition("approved", QuoteStatus.ACCEPTED)


class TestTransition:
    @pytest.mark.asyncio
    async def test_approval_stamps_quote_and_records_history(self):
        quote = make_quote(status=QuoteStatus.PENDING)
        result = await quote_state_machine.transition(
            quote, "approved", user_id="user-2", context={"metadata": {"reason": "checked"}}
        )

        assert quote.status is QuoteStatus.APPROVED
        assert quote.approved_by == "user-2"
        assert quote.approved_at is not None
        assert result["handler_result"] == {"approved_by": "user-2"}

        entry = quote.state_history[-1]
        assert entry["from_state"] == "pending"
        assert entry["to_state"] == "approved"
        assert entry["transitioned_by"] == "user-2"
        assert entry["metadata"] == {"reason": "checked"}

    @pytest.mark.asyncio
    async def test_submit_guard_rejection_changes_nothing(self):
        quote = make_quote(with_lines=False)
        with pytest.raises(InvalidTransition) as exc:
            await quote_state_machine.transition(quote, "pending", user_id="user-1")

        assert "line item" in exc.value.message
        assert quote.status is QuoteStatus.DRAFT
        assert quote.state_history == []

    @pytest.mark.asyncio
    async def test_unregistered_edge_lists_allowed_targets(self):
        quote = make_quote()
        with pytest.raises(InvalidTransition) as exc:
            await quote_state_machine.transition(quote, "sent", user_id="user-1")

        assert set(exc.value.allowed) == {"pending", "cancelled"}
        assert "Allowed transitions" in exc.value.message
        assert quote.status is QuoteStatus.DRAFT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.CANCELLED])
    async def test_terminal_state_is_named_in_the_error(self, status):
        quote = make_quote(status=status)
        with pytest.raises(InvalidTransition) as exc:
            await quote_state_machine.transition(quote, "draft", user_id="user-1")

        assert exc.value.allowed == []
        assert f"'{status.value}' is a terminal state" in exc.value.message
