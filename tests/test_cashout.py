from decimal import Decimal

import pytest

from rewardledger.encryption import EncryptionService
from rewardledger.errors import InvalidTransition, NotFound, SecurityError, ValidationFailed
from rewardledger.models import CashoutRequest, WalletAccount
from rewardledger.pricing import PriceQuote
from rewardledger.services import cashout
from rewardledger.services import wallet as wallets

BANK = {
    "account_number": "000123456789",
    "routing_number": "021000021",
    "account_holder_name": "Jordan Carter",
    "bank_name": "First Community Bank",
}


@pytest.fixture
def encryption():
    return EncryptionService(EncryptionService.generate_key(), production=False)


@pytest.fixture
def funded_user(db, make_user):
    user = make_user()
    wallets.credit(db, user.id, Decimal("80"), Decimal("0.80"))
    db.commit()
    return user


def _request(db, user, quote, encryption, amount="50"):
    return cashout.request_cashout(
        db, user_id=user.id, token_amount=amount, bank_details=dict(BANK), quote=quote, encryption=encryption,
    )


def test_request_freezes_rate_and_holds_tokens(db, funded_user, quote, encryption):
    result = _request(db, funded_user, quote, encryption)

    assert result.success
    req = result.request
    assert req.status == "pending"
    assert Decimal(req.conversion_rate) == Decimal("0.01")
    assert Decimal(req.cash_amount) == Decimal("0.50")
    assert req.external_transaction_id.startswith("sim_")
    assert wallets.token_balance(db, funded_user.id) == Decimal("30")
    assert "021000021" not in req.bank_details
    assert encryption.decrypt_json(req.bank_details) == BANK
    assert req.price_source == "test"


def test_fallback_price_is_recorded_on_the_request(db, funded_user, encryption):
    fallback = PriceQuote(Decimal("0.02"), "fallback")
    req = _request(db, funded_user, fallback, encryption, amount="10").request

    assert req.price_source == "fallback"
    assert Decimal(req.cash_amount) == Decimal("0.20")


def test_insufficient_balance_creates_nothing(db, funded_user, quote, encryption):
    result = _request(db, funded_user, quote, encryption, amount="90")

    assert not result.success
    assert result.error == "Insufficient balance"
    assert db.query(CashoutRequest).count() == 0
    assert wallets.token_balance(db, funded_user.id) == Decimal("80")


@pytest.mark.parametrize("amount,message", [("0.5", "Minimum"), ("150", "Maximum")])
def test_eligibility_limits(db, funded_user, quote, encryption, amount, message):
    result = _request(db, funded_user, quote, encryption, amount=amount)
    assert not result.success
    assert message in result.error


def test_bank_details_are_validated(db, funded_user, quote, encryption):
    bad = dict(BANK, routing_number="12345")
    with pytest.raises(ValidationFailed, match="routing"):
        cashout.request_cashout(db, user_id=funded_user.id, token_amount="10", bank_details=bad,
                                quote=quote, encryption=encryption)
    assert cashout.validate_bank_details(BANK) == []


def test_completed_cashout_updates_totals(db, funded_user, quote, encryption):
    req = _request(db, funded_user, quote, encryption).request

    cashout.transition(db, req.id, "processing")
    done = cashout.transition(db, req.id, "completed")

    assert done.status == "completed"
    assert done.processed_date is not None
    w = db.query(WalletAccount).filter_by(user_id=funded_user.id).one()
    db.refresh(w)
    assert Decimal(w.token_balance) == Decimal("30")
    assert Decimal(w.total_redeemed) == Decimal("50")
    assert Decimal(w.total_cashed_out) == Decimal("0.50")


@pytest.mark.parametrize("path", [["failed"], ["processing", "failed"], ["cancelled"]])
def test_failed_or_cancelled_cashout_refunds(db, funded_user, quote, encryption, path):
    req = _request(db, funded_user, quote, encryption).request
    for target in path:
        cashout.transition(db, req.id, target, failure_reason="bank rejected")

    assert wallets.token_balance(db, funded_user.id) == Decimal("80")


def test_illegal_transitions(db, funded_user, quote, encryption):
    req = _request(db, funded_user, quote, encryption).request
    with pytest.raises(InvalidTransition):
        cashout.transition(db, req.id, "completed")

    cashout.transition(db, req.id, "processing")
    with pytest.raises(InvalidTransition):
        cashout.transition(db, req.id, "cancelled")

    cashout.transition(db, req.id, "completed")
    with pytest.raises(InvalidTransition):
        cashout.transition(db, req.id, "failed")
    assert wallets.token_balance(db, funded_user.id) == Decimal("30")


def test_only_owner_can_cancel(db, funded_user, make_user, quote, encryption):
    req = _request(db, funded_user, quote, encryption).request
    other = make_user()
    with pytest.raises(NotFound):
        cashout.transition(db, req.id, "cancelled", user_id=other.id)
    assert cashout.transition(db, req.id, "cancelled", user_id=funded_user.id).status == "cancelled"


def test_production_requires_encryption_key():
    with pytest.raises(SecurityError):
        EncryptionService("", production=True)
    dev = EncryptionService("", production=False)
    assert not dev.enabled
    assert dev.decrypt_json(dev.encrypt_json(BANK)) == BANK
