"""
Bracket resolution, fund settings and eligibility tests
"""

import pytest
from decimal import Decimal

from django.contrib import admin

from fund.exceptions import FundValidationError
from fund.models import UNBOUNDED, FundSetting, InterestBracket
from tests.conftest import JOINED


pytestmark = pytest.mark.django_db


class TestFundSettings:

    def test_defaults_without_rows(self):
        config = FundSetting.objects.get_config()
        assert config.deposit_unit == Decimal('300')
        assert config.max_pool_percentage == Decimal('0.40')
        assert config.max_active_loans == 2
        assert config.loan_tenure_years == 3
        assert config.default_installment_months == 12

    def test_set_value_overrides_default(self):
        FundSetting.objects.set_value('max_pool_percentage', '25')
        assert FundSetting.objects.get_config().max_pool_percentage == Decimal('0.25')
        assert FundSetting.objects.get_value('max_pool_percentage') == '25'

    @pytest.mark.parametrize('key, value', [
        ('unknown_key', '1'),
        ('deposit_unit', '-300'),
        ('deposit_unit', 'three hundred'),
        ('max_active_loans', '2.5'),
    ])
    def test_set_value_rejects_bad_input(self, key, value):
        with pytest.raises(FundValidationError) as exc:
            FundSetting.objects.set_value(key, value)
        assert exc.value.code == 'invalid_setting'

    def test_admin_cannot_rename_an_existing_key(self, rf):
        model_admin = admin.site._registry[FundSetting]
        setting = FundSetting.objects.set_value('deposit_unit', '300')
        request = rf.get('/')

        assert 'setting_key' in model_admin.get_readonly_fields(request, setting)
        assert 'setting_key' not in model_admin.get_readonly_fields(request)

        setting.setting_value = '500'
        model_admin.save_model(request, setting, form=None, change=True)
        assert FundSetting.objects.count() == 1
        assert FundSetting.objects.get_value('deposit_unit') == '500'


class TestBracketResolution:

    @pytest.mark.parametrize('multiplier, rate', [
        ('1.5', '9.50'),
        ('2', '9.50'),
        ('2.0001', '10.00'),
        ('5', '10.00'),
        ('11', '11.50'),
        ('11.5', '12.00'),
        ('40', '12.00'),
    ])
    def test_lower_exclusive_upper_inclusive(self, brackets, multiplier, rate):
        assert InterestBracket.objects.resolve_rate(Decimal(multiplier)) == Decimal(rate)

    def test_zero_multiplier_falls_back_to_default(self, brackets):
        assert InterestBracket.objects.resolve_rate(Decimal('0')) == Decimal('12.00')

    def test_gap_falls_back_to_default(self):
        InterestBracket.objects.create(min_multiplier=0, max_multiplier=2, interest_rate=Decimal('9.5'))
        InterestBracket.objects.create(min_multiplier=5, max_multiplier=7, interest_rate=Decimal('10.5'))
        assert InterestBracket.objects.resolve_rate(Decimal('3')) == Decimal('12.00')

    def test_inactive_brackets_are_ignored(self, brackets):
        brackets[0].deactivate()
        assert InterestBracket.objects.resolve_rate(Decimal('1')) == Decimal('12.00')

    def test_unbounded_upper_bound(self, brackets):
        top = brackets[-1]
        assert top.upper_bound is UNBOUNDED
        assert top.contains(Decimal('1000'))
        assert not top.contains(Decimal('11'))


class TestBracketValidation:

    def test_overlap_with_active_bracket(self, brackets):
        with pytest.raises(FundValidationError) as exc:
            InterestBracket.objects.create(min_multiplier=1, max_multiplier=3, interest_rate=Decimal('9'))
        assert exc.value.code == 'bracket_overlap'

    def test_inactive_bracket_may_overlap(self, brackets):
        bracket = InterestBracket.objects.create(
            min_multiplier=1, max_multiplier=3, interest_rate=Decimal('9'), is_active=False
        )
        assert not bracket.is_active

        with pytest.raises(FundValidationError) as exc:
            bracket.activate()
        assert exc.value.code == 'bracket_overlap'

    def test_second_unbounded_bracket_overlaps(self, brackets):
        with pytest.raises(FundValidationError) as exc:
            InterestBracket.objects.create(min_multiplier=20, max_multiplier=None, interest_rate=Decimal('13'))
        assert exc.value.code == 'bracket_overlap'

    def test_max_must_exceed_min(self):
        with pytest.raises(FundValidationError) as exc:
            InterestBracket.objects.create(min_multiplier=5, max_multiplier=5, interest_rate=Decimal('10'))
        assert exc.value.code == 'invalid_setting'


class TestMaxMultiplier:

    def test_unbounded_top_bracket_caps_at_its_minimum(self, brackets):
        assert InterestBracket.objects.max_multiplier() == Decimal('11')

    def test_bounded_top_bracket_caps_at_its_maximum(self):
        InterestBracket.objects.create(min_multiplier=0, max_multiplier=2, interest_rate=Decimal('9.5'))
        InterestBracket.objects.create(min_multiplier=2, max_multiplier=5, interest_rate=Decimal('10'))
        assert InterestBracket.objects.max_multiplier() == Decimal('5')

    def test_no_active_brackets(self):
        assert InterestBracket.objects.max_multiplier() == Decimal('11')


class TestEligibility:

    def test_pool_percentage_caps_eligibility(self, make_member, brackets, unit_100):
        member = make_member()
        member.record_deposit(Decimal('2100'), 1, JOINED)
        make_member().record_deposit(Decimal('47900'), 1, JOINED)

        eligibility = member.get_eligibility()

        assert eligibility.total_pool == Decimal('50000')
        assert eligibility.total_deposits == Decimal('2100')
        assert eligibility.max_multiplier == Decimal('11')
        assert eligibility.max_eligible == Decimal('20000.00')
        assert eligibility.eligible
        assert eligibility.reason == ''

    def test_deposit_multiple_caps_eligibility(self, make_member, brackets):
        member = make_member()
        member.record_deposit(Decimal('300'), 1, JOINED)
        make_member().record_deposit(Decimal('30000'), 1, JOINED)

        assert member.get_eligibility().max_eligible == Decimal('3300.00')

    def test_outstanding_loans_reduce_eligibility(self, borrower):
        borrower.request_loan(Decimal('5000'))
        eligibility = borrower.get_eligibility()

        assert eligibility.outstanding == Decimal('5000')
        assert eligibility.max_eligible == Decimal('8200.00')
        assert eligibility.active_loans == 1

    def test_no_deposits(self, make_member, brackets):
        eligibility = make_member().get_eligibility()
        assert eligibility.max_eligible == Decimal('0.00')
        assert eligibility.max_multiplier == Decimal('0')
        assert not eligibility.eligible
        assert eligibility.reason == "No deposits recorded"
        assert eligibility.as_dict()['eligible'] is False
