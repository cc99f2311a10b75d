"""Commission amounts and destination routing."""

from decimal import Decimal

import pytest

from conftest import fresh
from core.errors import InvalidDestination
from models.campaigns import Campaign
from models.chainers import Chainer
from models.donations import Donation
from models.payouts import CommissionPayout
from utils.commission import DonateBack, DonateOther, Keep, compute_commission, destination_for, settle


class TestComputeCommission:
    @pytest.mark.parametrize(
        "amount, rate, expected",
        [
            ("10000", "5", "500.00"),
            ("10000.00", "5.0", "500.00"),
            ("10.10", "5", "0.51"),  # 0.505 rounds half-up
            ("0.10", "5", "0.01"),  # 0.005 rounds half-up
            ("333.33", "2.5", "8.33"),
            ("99.99", "10", "10.00"),
        ],
    )
    def test_rounds_half_up_to_cents(self, amount, rate, expected):
        assert compute_commission(amount, rate) == Decimal(expected)


class TestDestinationFor:
    def test_variants(self, make_campaign, make_chainer):
        campaign = make_campaign()
        other = make_campaign(title="School roofs")

        assert destination_for(make_chainer(campaign, user_id="a")) == Keep()
        assert destination_for(make_chainer(campaign, user_id="b", destination="donate_back")) == DonateBack(campaign.id)
        assert destination_for(
            make_chainer(campaign, user_id="c", destination="donate_other", charity_choice_id=other.id)
        ) == DonateOther(other.id)

    def test_donate_other_without_target(self, make_campaign, make_chainer):
        broken = make_chainer(make_campaign(), destination="donate_other", charity_choice_id=None)
        with pytest.raises(InvalidDestination):
            destination_for(broken)


def _settle(db, donation, chainer, rate="5"):
    payout = settle(
        db,
        donation_id=donation.id,
        campaign_id=donation.campaign_id,
        amount=donation.amount,
        currency=donation.currency,
        rate_percent=Decimal(rate),
        chainer=chainer,
    )
    db.commit()
    return payout


class TestSettle:
    def test_keep_credits_the_chainer(self, db, make_campaign, make_chainer, make_donation):
        campaign = make_campaign()
        chainer = make_chainer(campaign)
        donation = make_donation(campaign, chainer=chainer, status="completed")

        payout = _settle(db, donation, chainer)

        assert payout.status == "pending"
        assert payout.amount == Decimal("500.00")
        assert payout.destination == "keep"
        assert payout.destination_campaign_id is None
        refreshed = fresh(db, Chainer, chainer.id)
        assert refreshed.commission_earned == Decimal("500.00")
        assert refreshed.commission_paid is False

    def test_settling_twice_keeps_one_payout(self, db, make_campaign, make_chainer, make_donation):
        campaign = make_campaign()
        chainer = make_chainer(campaign)
        donation = make_donation(campaign, chainer=chainer, status="completed")

        first = _settle(db, donation, chainer)
        second = _settle(db, donation, fresh(db, Chainer, chainer.id))

        assert second.id == first.id
        assert db.query(CommissionPayout).count() == 1
        assert fresh(db, Chainer, chainer.id).commission_earned == Decimal("500.00")

    def test_donate_back_redirects_to_same_campaign(self, db, make_campaign, make_chainer, make_donation):
        campaign = make_campaign()
        chainer = make_chainer(campaign, destination="donate_back")
        donation = make_donation(campaign, chainer=chainer, status="completed")

        payout = _settle(db, donation, chainer)

        assert payout.status == "completed"
        assert payout.destination_campaign_id == campaign.id
        gift = db.query(Donation).filter(Donation.payment_method == "commission").one()
        assert gift.campaign_id == campaign.id
        assert gift.payment_status == "completed"
        assert gift.amount == Decimal("500.00")
        assert gift.donor_id == chainer.user_id
        assert payout.transaction_id == gift.id
        assert fresh(db, Campaign, campaign.id).current_amount == Decimal("500.00")
        assert fresh(db, Chainer, chainer.id).commission_earned == Decimal("0.00")

    def test_donate_back_with_existing_gift_links_it(self, db, make_campaign, make_chainer, make_donation):
        """The gift row survives from an earlier attempt; the payout is still closed out against it."""
        campaign = make_campaign()
        chainer = make_chainer(campaign, destination="donate_back")
        donation = make_donation(campaign, chainer=chainer, status="completed")
        gift = make_donation(
            campaign,
            donor_id=chainer.user_id,
            amount="500.00",
            status="completed",
            payment_method="commission",
        )
        gift.payment_intent_id = f"commission_{donation.id}"
        db.commit()

        payout = _settle(db, donation, chainer)

        assert payout.status == "completed"
        assert payout.destination_campaign_id == campaign.id
        assert payout.transaction_id == gift.id
        assert payout.processed_at is not None
        assert db.query(Donation).filter(Donation.payment_method == "commission").count() == 1
        assert fresh(db, Campaign, campaign.id).current_amount == Decimal("0.00")

    def test_donate_other_redirects_to_chosen_campaign(self, db, make_campaign, make_chainer, make_donation):
        campaign = make_campaign()
        other = make_campaign(title="School roofs")
        chainer = make_chainer(campaign, destination="donate_other", charity_choice_id=other.id)
        donation = make_donation(campaign, chainer=chainer, status="completed")

        payout = _settle(db, donation, chainer)

        assert payout.status == "completed"
        assert payout.destination == "donate_other"
        assert payout.destination_campaign_id == other.id
        assert fresh(db, Campaign, other.id).current_amount == Decimal("500.00")
        assert fresh(db, Campaign, campaign.id).current_amount == Decimal("0.00")
        assert fresh(db, Chainer, chainer.id).commission_earned == Decimal("0.00")

    def test_zero_commission_creates_nothing(self, db, make_campaign, make_chainer, make_donation):
        campaign = make_campaign(minimum_donation=Decimal("0"))
        chainer = make_chainer(campaign)
        donation = make_donation(campaign, chainer=chainer, amount="0.05", status="completed")

        assert _settle(db, donation, chainer) is None
        assert db.query(CommissionPayout).count() == 0
