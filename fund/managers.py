"""
Custom QuerySets and Managers
==============================

Provides reusable query methods for common filtering operations, plus the
manager-level workflow operations of the fund (configuration, bracket
resolution, pool snapshots and interest distribution).

Models are imported inside methods; fund.models imports this module.
"""

from django.db import IntegrityError, models, transaction
from django.db.models import Count, Q, Sum
from decimal import Decimal

from fund.exceptions import FundValidationError, NotFoundError, StateError
from fund.utils.helpers import serialized_operation, to_decimal
from fund.utils.money import MoneyCalculator

import logging


logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


class ActiveInactiveQuerySet(models.QuerySet):
    """QuerySet with active/inactive filtering"""

    def active(self):
        """Get only active records"""
        return self.filter(is_active=True)


class MemberScopedQuerySet(models.QuerySet):
    """QuerySet with member filtering support"""

    def for_member(self, member):
        """Filter by member"""
        return self.filter(member=member)


# =============================================================================
# MEMBERS
# =============================================================================

class MemberQuerySet(models.QuerySet):
    """Custom QuerySet for Member model"""

    def active(self):
        return self.filter(status='active')

    def get_statistics(self):
        """Member counts by status"""
        counts = dict(
            self.order_by().values('status').annotate(total=Count('id')).values_list('status', 'total')
        )
        return {
            'total': sum(counts.values()),
            'active': counts.get('active', 0),
            'pending': counts.get('pending', 0),
            'inactive': counts.get('inactive', 0),
            'rejected': counts.get('rejected', 0),
        }


class MemberManager(models.Manager):
    """Custom Manager for Member model"""

    def get_queryset(self):
        return MemberQuerySet(self.model, using=self._db)

    def active(self):
        return self.get_queryset().active()

    def get_statistics(self):
        return self.get_queryset().get_statistics()


# =============================================================================
# SETTINGS & BRACKETS
# =============================================================================

class FundSettingManager(models.Manager):
    """
    Custom Manager for FundSetting model

    The only read path (get_config) and write path (set_value) for fund
    tunables.
    """

    INTEGER_KEYS = ('max_active_loans', 'loan_tenure_years', 'default_installment_months')

    def _defaults(self):
        from fund.models import DEFAULT_FUND_SETTINGS
        return DEFAULT_FUND_SETTINGS

    def get_value(self, key):
        """Raw setting value, falling back to the built-in default"""
        defaults = self._defaults()
        row = self.filter(setting_key=key).first()
        if row is not None:
            return row.setting_value
        if key in defaults:
            return defaults[key][0]
        raise FundValidationError(
            "Unknown fund setting: %(key)s", code='invalid_setting', params={'key': key}
        )

    def _parse(self, key, value):
        try:
            number = to_decimal(value, 'setting')
        except FundValidationError:
            number = None
        if number is None or number <= 0 or (key in self.INTEGER_KEYS and number != int(number)):
            raise FundValidationError(
                "Setting %(key)s must be a positive number, got %(value)s",
                code='invalid_setting',
                params={'key': key, 'value': value},
            )
        return int(number) if key in self.INTEGER_KEYS else number

    def get_config(self):
        """
        Current fund configuration

        Returns:
            FundConfig: Parsed tunables; missing rows use DEFAULT_FUND_SETTINGS
        """
        from fund.models import FundConfig

        values = {key: default for key, (default, _) in self._defaults().items()}
        values.update(dict(
            self.filter(setting_key__in=list(values)).values_list('setting_key', 'setting_value')
        ))
        parsed = {key: self._parse(key, value) for key, value in values.items()}

        return FundConfig(
            deposit_unit=parsed['deposit_unit'],
            max_pool_percentage=parsed['max_pool_percentage'] / Decimal('100'),
            max_active_loans=parsed['max_active_loans'],
            loan_tenure_years=parsed['loan_tenure_years'],
            default_installment_months=parsed['default_installment_months'],
        )

    def set_value(self, key, value, description=None):
        """
        Validate and store one tunable

        Raises:
            FundValidationError: invalid_setting for unknown keys or values
                                 that are not positive numbers
        """
        defaults = self._defaults()
        if key not in defaults:
            raise FundValidationError(
                "Unknown fund setting: %(key)s", code='invalid_setting', params={'key': key}
            )
        parsed = self._parse(key, value)

        setting, created = self.update_or_create(
            setting_key=key,
            defaults={
                'setting_value': str(parsed),
                'description': description if description is not None else defaults[key][1],
            },
        )
        logger.info(f"Fund setting {'created' if created else 'updated'}: {key}={parsed}")
        return setting


class InterestBracketQuerySet(ActiveInactiveQuerySet):
    """Custom QuerySet for InterestBracket model"""

    def containing(self, multiplier):
        """Brackets whose (min, max] range holds the multiplier"""
        return self.filter(
            Q(min_multiplier__lt=multiplier)
            & (Q(max_multiplier__isnull=True) | Q(max_multiplier__gte=multiplier))
        )


class InterestBracketManager(models.Manager):
    """Custom Manager for InterestBracket model"""

    def get_queryset(self):
        return InterestBracketQuerySet(self.model, using=self._db)

    def active(self):
        return self.get_queryset().active()

    def resolve_rate(self, multiplier):
        """
        Annual interest rate for a borrowing multiplier

        Lower bound exclusive, upper bound inclusive; a multiplier no active
        bracket contains gets DEFAULT_INTEREST_RATE.
        """
        from fund.models import DEFAULT_INTEREST_RATE

        multiplier = Decimal(str(multiplier))
        bracket = self.active().containing(multiplier).order_by('min_multiplier').first()
        if bracket is None:
            logger.warning(f"No interest bracket for multiplier {multiplier}, using default rate")
            return DEFAULT_INTEREST_RATE
        return bracket.interest_rate

    def max_multiplier(self):
        """
        Borrowing cap as a multiple of member deposits

        The highest active bracket's upper bound, or its lower bound when it
        is unbounded. Without active brackets DEFAULT_MAX_MULTIPLIER applies.
        """
        from fund.models import DEFAULT_MAX_MULTIPLIER

        top = self.active().order_by('-min_multiplier').first()
        if top is None:
            return DEFAULT_MAX_MULTIPLIER
        if top.max_multiplier is not None:
            return top.max_multiplier
        return top.min_multiplier


# =============================================================================
# DEPOSITS
# =============================================================================

class DepositQuerySet(MemberScopedQuerySet):
    """Custom QuerySet for Deposit model"""

    def total_amount(self):
        """Sum of deposit amounts (0.00 when empty)"""
        total = self.aggregate(total=Sum('amount'))['total']
        return total or ZERO

    def totals_by_member(self):
        """{member_id: total deposits}"""
        rows = self.order_by().values('member_id').annotate(total=Sum('amount'))
        return {row['member_id']: row['total'] for row in rows}


class DepositManager(models.Manager):
    """Custom Manager for Deposit model"""

    def get_queryset(self):
        return DepositQuerySet(self.model, using=self._db)

    def for_member(self, member):
        return self.get_queryset().for_member(member)

    def total_amount(self):
        return self.get_queryset().total_amount()

    def totals_by_member(self):
        return self.get_queryset().totals_by_member()


# =============================================================================
# LOANS
# =============================================================================

class LoanQuerySet(MemberScopedQuerySet):
    """Custom QuerySet for Loan model"""

    def active(self):
        """Loans still being repaid"""
        return self.filter(status='active')

    def completed(self):
        return self.filter(status='completed')

    def defaulted(self):
        return self.filter(status='defaulted')

    def total_outstanding(self):
        total = self.aggregate(total=Sum('outstanding_principal'))['total']
        return total or ZERO

    def get_statistics(self):
        """Get loan portfolio summary"""
        aggregate_data = self.aggregate(
            total_loans=Count('id'),
            total_principal=Sum('principal_amount'),
            total_interest_paid=Sum('total_interest_paid'),
        )

        return {
            'total_loans': aggregate_data['total_loans'],
            'total_principal': aggregate_data['total_principal'] or ZERO,
            'total_interest_paid': aggregate_data['total_interest_paid'] or ZERO,
            'total_outstanding': self.active().total_outstanding(),
            'active_loans': self.active().count(),
            'completed_loans': self.completed().count(),
            'defaulted_loans': self.defaulted().count(),
        }


class LoanManager(models.Manager):
    """Custom Manager for Loan model"""

    def get_queryset(self):
        return LoanQuerySet(self.model, using=self._db)

    def active(self):
        return self.get_queryset().active()

    def completed(self):
        return self.get_queryset().completed()

    def for_member(self, member):
        return self.get_queryset().for_member(member)

    def get_statistics(self):
        return self.get_queryset().get_statistics()


class ScheduleQuerySet(models.QuerySet):
    """Custom QuerySet for pre-installment charges and installments"""

    def unpaid(self):
        return self.filter(is_paid=False)

    def for_loan(self, loan):
        return self.filter(loan=loan)

    def for_member(self, member):
        return self.filter(loan__member=member)

    def for_active_loans(self):
        return self.filter(loan__status='active')


class ScheduleManager(models.Manager):
    """Custom Manager for PreInstallmentCharge and InstallmentEntry"""

    def get_queryset(self):
        return ScheduleQuerySet(self.model, using=self._db)

    def unpaid(self):
        return self.get_queryset().unpaid()

    def for_loan(self, loan):
        return self.get_queryset().for_loan(loan)

    def for_active_loans(self):
        return self.get_queryset().for_active_loans()


# =============================================================================
# DISTRIBUTION
# =============================================================================

class PoolSnapshotQuerySet(models.QuerySet):
    """Custom QuerySet for PoolSnapshot model"""

    def finalized(self):
        return self.filter(is_finalized=True)


class PoolSnapshotManager(models.Manager):
    """Custom Manager for PoolSnapshot model"""

    def get_queryset(self):
        return PoolSnapshotQuerySet(self.model, using=self._db)

    def finalized(self):
        return self.get_queryset().finalized()

    @serialized_operation
    def create_snapshot(self, fund_month, month_label, finalized_by=None, finalize=True):
        """
        Freeze the current pool composition for a fund-month

        Every member with deposits gets floor(total / unit) units; the
        pool gets floor(total pool / unit).

        Args:
            fund_month: Fund-relative month (>= 1), unique per snapshot
            month_label: Calendar label, e.g. '2025-03'
            finalized_by: Admin member freezing the month
            finalize: False creates a draft to finalize later

        Returns:
            PoolSnapshot: The created snapshot

        Raises:
            FundValidationError: invalid_month
            StateError: already_exists
        """
        from fund.models import Deposit, FundSetting, PoolSnapshotMember
        from django.utils import timezone

        try:
            fund_month = int(fund_month)
        except (TypeError, ValueError):
            fund_month = 0
        if fund_month < 1:
            raise FundValidationError(
                "Fund month must be at least 1", code='invalid_month', params={'fund_month': fund_month}
            )

        if self.filter(fund_month=fund_month).exists():
            raise StateError(
                "Snapshot for fund month %(fund_month)s already exists",
                code='already_exists',
                params={'fund_month': fund_month},
            )

        unit = FundSetting.objects.get_config().deposit_unit
        member_totals = Deposit.objects.totals_by_member()
        total_pool = sum(member_totals.values(), ZERO)
        pool_units = MoneyCalculator.units_in(total_pool, unit)

        try:
            with transaction.atomic():
                snapshot = self.create(
                    fund_month=fund_month,
                    month_label=month_label,
                    total_pool_amount=total_pool,
                    total_pool_units=pool_units,
                    cumulative_pool_units=pool_units,
                    is_finalized=finalize,
                    finalized_at=timezone.now() if finalize else None,
                    finalized_by=finalized_by if finalize else None,
                )
        except IntegrityError as e:
            logger.warning(f"Concurrent snapshot insert for fund month {fund_month}: {e}")
            raise StateError(
                "Snapshot for fund month %(fund_month)s already exists",
                code='already_exists',
                params={'fund_month': fund_month},
            ) from e

        PoolSnapshotMember.objects.bulk_create([
            PoolSnapshotMember(
                snapshot=snapshot,
                member_id=member_id,
                total_deposits=total,
                cumulative_units=MoneyCalculator.units_in(total, unit),
            )
            for member_id, total in member_totals.items()
        ])

        logger.info(
            f"Pool snapshot created: fund month {fund_month} ({month_label}), "
            f"Pool=₹{total_pool}, Units={pool_units}, Members={len(member_totals)}, "
            f"Finalized={finalize}"
        )
        return snapshot


class InterestEntryQuerySet(models.QuerySet):
    """Custom QuerySet for InterestEntry model"""

    def monthly_totals(self):
        """Rows of earned_month, source, total, entries"""
        return (
            self.order_by()
            .values('earned_month', 'source')
            .annotate(total=Sum('amount'), entries=Count('id'))
            .order_by('earned_month', 'source')
        )


class InterestEntryManager(models.Manager):
    """Custom Manager for InterestEntry model"""

    def get_queryset(self):
        return InterestEntryQuerySet(self.model, using=self._db)

    def monthly_totals(self):
        return self.get_queryset().monthly_totals()

    @serialized_operation
    def distribute(self, earned_month, source, amount, pool_source_month, loan=None,
                   source_description='', notes='', recorded_by=None):
        """
        Record pool-earned interest and split it over a finalized snapshot

        Each member receives round(amount / pool units × member units, 2);
        the reserve is credited with the exact amount. The snapshot row and
        then the reserve row are locked for the whole operation.

        Returns:
            InterestEntry: Created entry with its shares

        Raises:
            FundValidationError: invalid_amount, invalid_source, invalid_month
            NotFoundError: snapshot_missing
            StateError: zero_units
        """
        from fund.models import MemberInterestShare, PoolSnapshot
        from fund.utils.ledger_helpers import post_ledger_transaction

        amount = to_decimal(amount)
        if amount <= 0 or amount != MoneyCalculator.round_money(amount):
            raise FundValidationError(
                "Interest amount must be a positive amount in whole paise: %(amount)s",
                code='invalid_amount',
                params={'amount': amount},
            )

        if source not in dict(self.model.SOURCE_CHOICES):
            raise FundValidationError(
                "Unknown interest source: %(source)s", code='invalid_source', params={'source': source}
            )
        if loan is not None and source != 'loan_interest':
            raise FundValidationError(
                "Only loan_interest entries may reference a loan, got %(source)s",
                code='invalid_source',
                params={'source': source},
            )

        for field, value in (('earned_month', earned_month), ('pool_source_month', pool_source_month)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise FundValidationError(
                    "%(field)s must be a positive integer", code='invalid_month',
                    params={'field': field, 'value': value},
                )

        snapshot = (
            PoolSnapshot.objects.select_for_update()
            .filter(fund_month=pool_source_month, is_finalized=True)
            .first()
        )
        if snapshot is None:
            logger.warning(f"Distribution rejected: no finalized snapshot for month {pool_source_month}")
            raise NotFoundError(
                "No finalized pool snapshot for fund month %(fund_month)s",
                code='snapshot_missing',
                params={'fund_month': pool_source_month},
            )

        total_units = snapshot.cumulative_pool_units
        if total_units == 0:
            raise StateError(
                "Pool snapshot for fund month %(fund_month)s has no units",
                code='zero_units',
                params={'fund_month': pool_source_month},
            )

        entry = self.create(
            earned_month=earned_month,
            source=source,
            source_description=source_description,
            loan=loan,
            pool_source_month=pool_source_month,
            amount=amount,
            notes=notes,
            recorded_by=recorded_by,
        )

        rate_per_unit = amount / Decimal(total_units)
        shares = [
            MemberInterestShare(
                member_id=member_id,
                interest_entry=entry,
                member_cumulative_units=units,
                total_pool_units=total_units,
                share_percentage=MoneyCalculator.round_money(
                    Decimal(units) / Decimal(total_units) * 100, MoneyCalculator.FOUR_PLACES
                ),
                interest_share=MoneyCalculator.round_money(rate_per_unit * units),
            )
            for member_id, units in snapshot.member_units.items()
            if units > 0
        ]
        MemberInterestShare.objects.bulk_create(shares)

        post_ledger_transaction(
            'interest_credit',
            amount,
            interest_entry=entry,
            loan=loan,
            description=f"Interest month {earned_month} ({entry.get_source_display()})",
            recorded_by=recorded_by,
            interest_month=earned_month,
        )

        distributed = sum((share.interest_share for share in shares), ZERO)
        logger.info(
            f"Interest distributed: month {earned_month}, Source={source}, Amount=₹{amount}, "
            f"Members={len(shares)}, Distributed=₹{distributed}, Residual=₹{amount - distributed}"
        )
        return entry


class MemberInterestShareQuerySet(MemberScopedQuerySet):
    """Custom QuerySet for MemberInterestShare model"""

    def totals_by_member(self):
        """Rows of member_id, member name, total earned and entry count"""
        return (
            self.order_by()
            .values('member_id', 'member__full_name')
            .annotate(total_interest=Sum('interest_share'), entries=Count('id'))
            .order_by('-total_interest', 'member__full_name')
        )


class MemberInterestShareManager(models.Manager):
    """Custom Manager for MemberInterestShare model"""

    def get_queryset(self):
        return MemberInterestShareQuerySet(self.model, using=self._db)

    def for_member(self, member):
        return self.get_queryset().for_member(member)

    def totals_by_member(self):
        return self.get_queryset().totals_by_member()


# =============================================================================
# FUND LEDGER
# =============================================================================

class FundLedgerTransactionQuerySet(models.QuerySet):
    """Custom QuerySet for FundLedgerTransaction model"""

    def recent(self, limit=20):
        return self.order_by('-created_at')[:limit]


class FundLedgerTransactionManager(models.Manager):
    """Custom Manager for FundLedgerTransaction model"""

    def get_queryset(self):
        return FundLedgerTransactionQuerySet(self.model, using=self._db)

    def recent(self, limit=20):
        return self.get_queryset().recent(limit)
