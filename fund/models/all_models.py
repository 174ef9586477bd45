"""
Saarthi Fund - Consolidated Models
==================================

All fund models in one module:

- Member                  identity record supplied by the host project
- FundSetting             admin-configurable tunables
- InterestBracket         multiplier → interest rate table
- Deposit                 member contributions with running totals
- Loan                    loans with frozen rate and eligibility snapshot
- PreInstallmentCharge    compound interest before installments start
- InstallmentEntry        reducing balance installment schedule
- Payment                 append-only payment log
- PoolSnapshot            monthly freeze of pool composition
- PoolSnapshotMember      member → units mapping of a snapshot
- InterestEntry           pool-earned interest to distribute
- MemberInterestShare     per-member share of an interest entry
- FundLedgerBalance       reserve balance
- FundLedgerTransaction   reserve audit trail

Workflow operations are model (or manager) methods running inside
``serialized_operation``: one atomic block that first locks the contended
aggregate row with select_for_update().
"""

from dataclasses import asdict, dataclass
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django.utils.crypto import get_random_string

from .base import BaseModel, AppendOnlyModel, StatusTrackingMixin
from fund.exceptions import (
    EligibilityError, FundValidationError, NotFoundError, StateError,
)
from fund.managers import (
    DepositManager, FundLedgerTransactionManager, FundSettingManager,
    InterestBracketManager, InterestEntryManager, LoanManager, MemberManager,
    MemberInterestShareManager, PoolSnapshotManager, ScheduleManager,
)
from fund.utils.helpers import (
    member_month_between, serialized_operation, to_date, to_decimal,
)
from fund.utils.money import InterestCalculator, MoneyCalculator

import logging


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

DEFAULT_INTEREST_RATE = Decimal('12.00')  # when no bracket matches a multiplier
DEFAULT_MAX_MULTIPLIER = Decimal('11')  # when no bracket is active at all

DEFAULT_FUND_SETTINGS = {
    'deposit_unit': (
        '300',
        'Deposits must be in multiples of this; cumulative deposits must reach unit x member-month',
    ),
    'max_pool_percentage': ('40', 'Max percentage of the pool a member can borrow'),
    'max_active_loans': ('2', 'Maximum active loans per member'),
    'loan_tenure_years': ('3', 'Maximum loan tenure in years'),
    'default_installment_months': ('12', 'Installment count used when none is given'),
}

# (min_multiplier, max_multiplier, annual rate %)
DEFAULT_INTEREST_BRACKETS = [
    (Decimal('0'), Decimal('2'), Decimal('9.5')),
    (Decimal('2'), Decimal('5'), Decimal('10.0')),
    (Decimal('5'), Decimal('7'), Decimal('10.5')),
    (Decimal('7'), Decimal('9'), Decimal('11.0')),
    (Decimal('9'), Decimal('11'), Decimal('11.5')),
    (Decimal('11'), None, Decimal('12.0')),
]


class _Unbounded:
    """Upper bound of the last interest bracket"""

    def __repr__(self):
        return 'UNBOUNDED'


UNBOUNDED = _Unbounded()


@dataclass(frozen=True)
class FundConfig:
    """Current fund tunables, parsed from FundSetting rows"""

    deposit_unit: Decimal
    max_pool_percentage: Decimal  # fraction, 40% → Decimal('0.40')
    max_active_loans: int
    loan_tenure_years: int
    default_installment_months: int


@dataclass(frozen=True)
class Eligibility:
    """Loan eligibility of a member at a point in time"""

    total_deposits: Decimal
    total_pool: Decimal
    outstanding: Decimal
    max_eligible: Decimal
    max_multiplier: Decimal
    active_loans: int
    max_active_loans: int
    eligible: bool
    reason: str = ''

    def as_dict(self):
        return asdict(self)


# =============================================================================
# MEMBER
# =============================================================================

class Member(BaseModel):
    """
    Fund member

    Owned by the identity collaborator; the fund only reads the id, role,
    status and join date. The join date starts member-month 1.
    """

    ROLE_CHOICES = [
        ('member', 'Member'),
        ('admin', 'Admin'),
    ]

    STATUS_CHOICES = [
        ('pending', 'Pending Approval'),
        ('active', 'Active'),
        ('inactive', 'Inactive'),
        ('rejected', 'Rejected'),
    ]

    full_name = models.CharField(max_length=100)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=15, blank=True)
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='member', db_index=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending', db_index=True)
    joined_at = models.DateField(
        null=True,
        blank=True,
        help_text="Join date; member-month 1 starts here"
    )

    objects = MemberManager()

    class Meta:
        ordering = ['full_name']
        verbose_name = "Member"
        verbose_name_plural = "Members"

    def __str__(self):
        return self.full_name

    @property
    def is_active_member(self):
        return self.status == 'active'

    @property
    def total_deposits(self):
        return Deposit.objects.for_member(self).total_amount()

    def member_month_on(self, on_date=None):
        """Member-relative month for a calendar date (0 before joining)"""
        return member_month_between(self.joined_at, on_date or timezone.now().date())

    def _lock(self):
        return Member.objects.select_for_update().get(pk=self.pk)

    # =========================================================================
    # DEPOSITS
    # =========================================================================

    @serialized_operation
    def record_deposit(self, amount, member_month, deposit_date, recorded_by=None, notes=''):
        """
        Record a contribution for this member

        Args:
            amount: Positive multiple of the deposit unit
            member_month: Member-relative month (>= 1)
            deposit_date: Calendar date of the deposit
            recorded_by: Admin member recording it
            notes: Free text

        Returns:
            Deposit: Created deposit with its cumulative total

        Raises:
            FundValidationError: invalid_amount, invalid_month, below_minimum
        """
        config = FundSetting.objects.get_config()
        amount = to_decimal(amount)
        Deposit.validate_amount(amount, config.deposit_unit)
        member_month = Deposit.validate_member_month(member_month)
        deposit_date = to_date(deposit_date, 'deposit_date')

        member = self._lock()

        prior_total = Deposit.objects.for_member(member).total_amount()
        new_total = prior_total + amount
        Deposit.check_minimum(new_total, config.deposit_unit, member_month)

        deposit = Deposit.objects.create(
            member=member,
            amount=amount,
            member_month=member_month,
            deposit_date=deposit_date,
            cumulative_total=new_total,
            notes=notes,
            recorded_by=recorded_by,
        )

        logger.info(
            f"Deposit recorded: Member={member.pk}, Month={member_month}, "
            f"Amount=₹{amount}, CumulativeTotal=₹{new_total}"
        )
        return deposit

    @serialized_operation
    def import_deposits(self, rows, recorded_by=None):
        """
        Bulk import historical deposits in one transaction

        Args:
            rows: Iterable of dicts with amount, member_month, deposit_date
                  and optional notes

        Returns:
            list: Created deposits in member-month order
        """
        config = FundSetting.objects.get_config()
        rows = list(rows)
        if not rows:
            raise FundValidationError(
                "At least one deposit is required", code='missing_field', params={'field': 'deposits'}
            )

        prepared = []
        for row in rows:
            for field in ('amount', 'member_month', 'deposit_date'):
                if row.get(field) in (None, ''):
                    raise FundValidationError(
                        "Each deposit must have %(field)s", code='missing_field', params={'field': field}
                    )
            amount = to_decimal(row['amount'])
            Deposit.validate_amount(amount, config.deposit_unit)
            prepared.append({
                'amount': amount,
                'member_month': Deposit.validate_member_month(row['member_month']),
                'deposit_date': to_date(row['deposit_date'], 'deposit_date'),
                'notes': row.get('notes') or 'Bulk import',
            })

        prepared.sort(key=lambda r: r['member_month'])

        member = self._lock()
        running_total = Deposit.objects.for_member(member).total_amount()

        created = []
        for row in prepared:
            running_total += row['amount']
            Deposit.check_minimum(running_total, config.deposit_unit, row['member_month'])
            created.append(Deposit.objects.create(
                member=member,
                cumulative_total=running_total,
                recorded_by=recorded_by,
                **row
            ))

        logger.info(
            f"Imported {len(created)} deposits for member {member.pk}, "
            f"FinalTotal=₹{running_total}"
        )
        return created

    @serialized_operation
    def recalculate_deposits(self):
        """
        Rebuild cumulative totals from scratch in member-month order

        Idempotent; used to repair historical import errors.

        Returns:
            dict: updated row count and final total
        """
        member = self._lock()
        running_total = Decimal('0.00')
        updated = 0

        for deposit in Deposit.objects.for_member(member).order_by('member_month', 'created_at'):
            running_total += deposit.amount
            if deposit.cumulative_total != running_total:
                deposit.cumulative_total = running_total
                deposit.save(update_fields=['cumulative_total', 'updated_at'])
                updated += 1

        logger.info(
            f"Recalculated deposits for member {member.pk}: "
            f"{updated} rows updated, FinalTotal=₹{running_total}"
        )
        return {'updated': updated, 'final_total': running_total}

    # =========================================================================
    # ELIGIBILITY & LOANS
    # =========================================================================

    def get_eligibility(self):
        """Current loan eligibility (read only)"""
        return self._compute_eligibility(FundSetting.objects.get_config())

    def _compute_eligibility(self, config):
        total_deposits = Deposit.objects.for_member(self).total_amount()
        total_pool = Deposit.objects.all().total_amount()
        member_loans = Loan.objects.for_member(self).active()
        outstanding = member_loans.total_outstanding()
        active_loans = member_loans.count()

        if total_deposits == 0:
            max_eligible = Decimal('0.00')
            max_multiplier = Decimal('0')
        else:
            max_multiplier = InterestBracket.objects.max_multiplier()
            max_from_pool = MoneyCalculator.calculate_percentage(total_pool, config.max_pool_percentage)
            max_from_deposits = MoneyCalculator.round_money(total_deposits * max_multiplier)
            max_eligible = max(min(max_from_pool, max_from_deposits) - outstanding, Decimal('0.00'))

        reason = ''
        if active_loans >= config.max_active_loans:
            reason = f"Already has {active_loans} active loans (max: {config.max_active_loans})"
        elif total_deposits == 0:
            reason = "No deposits recorded"
        elif max_eligible <= 0:
            reason = "Outstanding loans use up the eligible amount"

        return Eligibility(
            total_deposits=total_deposits,
            total_pool=total_pool,
            outstanding=outstanding,
            max_eligible=max_eligible,
            max_multiplier=max_multiplier,
            active_loans=active_loans,
            max_active_loans=config.max_active_loans,
            eligible=max_eligible > 0 and active_loans < config.max_active_loans,
            reason=reason,
        )

    @serialized_operation
    def request_loan(self, amount, installment_start=None, disbursed_on=None,
                     installment_count=None, pool_source_month=None, approved_by=None):
        """
        Create a loan against the member's current eligibility

        The active-loan count and the eligibility are re-checked under the
        member row lock, in the same transaction as the insert.

        Args:
            amount: Principal requested
            installment_start: Optional date to start installments right away
            disbursed_on: Disbursement date (default: today)
            installment_count: Installments when installment_start is given
            pool_source_month: Fund-month whose snapshot funds this loan
            approved_by: Admin member approving the loan

        Returns:
            Loan: Created loan

        Raises:
            FundValidationError: invalid_amount
            EligibilityError: member_inactive, max_active_loans, exceeds_eligibility
        """
        amount = to_decimal(amount)
        if amount <= 0 or amount != MoneyCalculator.round_money(amount):
            raise FundValidationError(
                "Loan amount must be a positive amount in whole paise: %(amount)s",
                code='invalid_amount',
                params={'amount': amount},
            )
        disbursed_on = to_date(disbursed_on or timezone.now().date(), 'disbursed_on')

        member = self._lock()
        if member.status != 'active':
            raise EligibilityError(
                "Member is %(status)s and cannot borrow",
                code='member_inactive',
                params={'status': member.status},
            )

        config = FundSetting.objects.get_config()
        eligibility = member._compute_eligibility(config)

        if eligibility.active_loans >= config.max_active_loans:
            logger.warning(f"Loan rejected for member {member.pk}: max active loans reached")
            raise EligibilityError(
                "Maximum active loans reached (%(active)s of %(max)s)",
                code='max_active_loans',
                params={'active': eligibility.active_loans, 'max': config.max_active_loans},
            )

        if amount > eligibility.max_eligible:
            logger.warning(
                f"Loan rejected for member {member.pk}: ₹{amount} exceeds eligibility "
                f"₹{eligibility.max_eligible}"
            )
            raise EligibilityError(
                "Amount exceeds eligibility. Max: %(max_eligible)s",
                code='exceeds_eligibility',
                params={'amount': amount, 'max_eligible': eligibility.max_eligible},
            )

        if eligibility.total_deposits > 0:
            multiplier = amount / eligibility.total_deposits
        else:
            multiplier = Decimal('0')
        interest_rate = InterestBracket.objects.resolve_rate(multiplier)

        loan = Loan.objects.create(
            member=member,
            principal_amount=amount,
            interest_rate=interest_rate,
            multiplier_at_disbursement=MoneyCalculator.round_money(
                multiplier, MoneyCalculator.FOUR_PLACES
            ),
            total_deposits_at_loan=eligibility.total_deposits,
            total_pool_at_loan=eligibility.total_pool,
            max_eligible_at_loan=eligibility.max_eligible,
            disbursed_on=disbursed_on,
            maturity_date=disbursed_on + relativedelta(years=config.loan_tenure_years),
            outstanding_principal=amount,
            pool_source_month=pool_source_month,
            approved_by=approved_by,
        )

        logger.info(
            f"Loan created: {loan.loan_number}, Member={member.pk}, Principal=₹{amount}, "
            f"Multiplier={loan.multiplier_at_disbursement}, Rate={interest_rate}%"
        )

        if installment_start:
            loan.start_installments(installment_start, installment_count)

        return loan


# =============================================================================
# FUND SETTINGS
# =============================================================================

class FundSetting(BaseModel):
    """Admin-configurable key/value fund tunable"""

    setting_key = models.CharField(max_length=50, unique=True)
    setting_value = models.CharField(max_length=255)
    description = models.TextField(blank=True)

    objects = FundSettingManager()

    class Meta:
        ordering = ['setting_key']
        verbose_name = "Fund Setting"
        verbose_name_plural = "Fund Settings"

    def __str__(self):
        return f"{self.setting_key} = {self.setting_value}"


# =============================================================================
# INTEREST BRACKETS
# =============================================================================

class InterestBracket(BaseModel, StatusTrackingMixin):
    """
    Multiplier range → annual interest rate

    The range is (min_multiplier, max_multiplier]: lower bound exclusive,
    upper bound inclusive. A NULL max_multiplier is UNBOUNDED. Active
    brackets never overlap.
    """

    min_multiplier = models.DecimalField(
        max_digits=6,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Exclusive lower bound"
    )
    max_multiplier = models.DecimalField(
        max_digits=6,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Inclusive upper bound; empty means no upper limit"
    )
    interest_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Annual rate in percent (e.g. 9.50)"
    )

    objects = InterestBracketManager()

    class Meta:
        ordering = ['min_multiplier']
        verbose_name = "Interest Bracket"
        verbose_name_plural = "Interest Brackets"
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(min_multiplier__gte=0)
                    & (Q(max_multiplier__isnull=True) | Q(max_multiplier__gt=F('min_multiplier')))
                ),
                name='bracket_valid_range'
            ),
        ]

    def __str__(self):
        upper = self.max_multiplier if self.max_multiplier is not None else '∞'
        return f"({self.min_multiplier}x, {upper}x] → {self.interest_rate}%"

    @property
    def upper_bound(self):
        return UNBOUNDED if self.max_multiplier is None else self.max_multiplier

    def contains(self, multiplier):
        multiplier = Decimal(str(multiplier))
        if multiplier <= self.min_multiplier:
            return False
        return self.upper_bound is UNBOUNDED or multiplier <= self.upper_bound

    def overlaps(self, other):
        below_other_top = other.upper_bound is UNBOUNDED or self.min_multiplier < other.upper_bound
        above_other_bottom = self.upper_bound is UNBOUNDED or other.min_multiplier < self.upper_bound
        return below_other_top and above_other_bottom

    def clean(self):
        super().clean()
        if self.min_multiplier is None or self.interest_rate is None:
            return
        if self.min_multiplier < 0:
            raise FundValidationError(
                "Minimum multiplier cannot be negative", code='invalid_setting',
                params={'min_multiplier': self.min_multiplier},
            )
        if self.max_multiplier is not None and self.max_multiplier <= self.min_multiplier:
            raise FundValidationError(
                "Maximum multiplier must be above %(min_multiplier)s",
                code='invalid_setting',
                params={'min_multiplier': self.min_multiplier, 'max_multiplier': self.max_multiplier},
            )
        if not self.is_active:
            return
        for other in InterestBracket.objects.active().exclude(pk=self.pk):
            if self.overlaps(other):
                raise FundValidationError(
                    "Bracket overlaps active bracket %(other)s",
                    code='bracket_overlap',
                    params={'other': str(other)},
                )

    def save(self, *args, **kwargs):
        self.clean()
        super().save(*args, **kwargs)


# =============================================================================
# DEPOSITS
# =============================================================================

class Deposit(AppendOnlyModel):
    """
    Member contribution

    cumulative_total is the member's running total as of this deposit in
    member-month order. Rows are never edited; only recalculation may
    rewrite cumulative_total.
    """

    mutable_fields = ('cumulative_total',)
    immutable_error_code = 'deposit_immutable'

    member = models.ForeignKey(
        'Member',
        on_delete=models.PROTECT,
        related_name='deposits'
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    member_month = models.PositiveIntegerField(
        help_text="Member-relative month number (1, 2, 3, ...)"
    )
    deposit_date = models.DateField()
    cumulative_total = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Running total after this deposit"
    )
    notes = models.TextField(blank=True)
    recorded_by = models.ForeignKey(
        'Member',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recorded_deposits'
    )

    objects = DepositManager()

    class Meta:
        ordering = ['member', 'member_month', 'created_at']
        verbose_name = "Deposit"
        verbose_name_plural = "Deposits"
        indexes = [
            models.Index(fields=['member', 'member_month']),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='deposit_amount_positive'),
            models.CheckConstraint(condition=Q(member_month__gt=0), name='deposit_member_month_positive'),
        ]

    def __str__(self):
        return f"{self.member} - month {self.member_month} - ₹{self.amount:,.2f}"

    @staticmethod
    def validate_amount(amount, unit):
        if amount <= 0 or not MoneyCalculator.is_multiple_of(amount, unit):
            raise FundValidationError(
                "Amount must be a positive multiple of %(unit)s",
                code='invalid_amount',
                params={'amount': amount, 'unit': unit},
            )

    @staticmethod
    def validate_member_month(member_month):
        try:
            month = int(member_month)
        except (TypeError, ValueError):
            month = 0
        if month < 1 or str(month) != str(member_month).strip():
            raise FundValidationError(
                "member_month must be at least 1",
                code='invalid_month',
                params={'member_month': member_month},
            )
        return month

    @staticmethod
    def check_minimum(new_total, unit, member_month):
        required = unit * member_month
        if new_total < required:
            raise FundValidationError(
                "Total deposits (%(total)s) must be at least %(required)s for month %(member_month)s",
                code='below_minimum',
                params={'total': new_total, 'required': required, 'member_month': member_month},
            )


# =============================================================================
# LOANS
# =============================================================================

class Loan(BaseModel):
    """
    Member loan

    Rate and multiplier are frozen at disbursement together with the
    eligibility inputs used to approve it. Repayment runs in two phases:
    compound interest until installment_start_date, then a reducing
    balance installment schedule.

    Lifecycle: active → completed (principal repaid), active → defaulted
    (administrative).
    """

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('defaulted', 'Defaulted'),
    ]

    loan_number = models.CharField(
        max_length=50,
        unique=True,
        db_index=True,
        help_text="Auto-generated loan number"
    )

    member = models.ForeignKey(
        'Member',
        on_delete=models.PROTECT,
        related_name='loans'
    )
    approved_by = models.ForeignKey(
        'Member',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='loans_approved'
    )

    # =========================================================================
    # TERMS (frozen at disbursement)
    # =========================================================================

    principal_amount = models.DecimalField(max_digits=12, decimal_places=2)
    interest_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        help_text="Annual rate in percent"
    )
    multiplier_at_disbursement = models.DecimalField(
        max_digits=10,
        decimal_places=4,
        help_text="Principal / member deposits at disbursement"
    )

    # Eligibility snapshot (audit)
    total_deposits_at_loan = models.DecimalField(max_digits=12, decimal_places=2)
    total_pool_at_loan = models.DecimalField(max_digits=12, decimal_places=2)
    max_eligible_at_loan = models.DecimalField(max_digits=12, decimal_places=2)
    pool_source_month = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Fund-month whose pool snapshot funded this loan"
    )

    # =========================================================================
    # TIMELINE
    # =========================================================================

    disbursed_on = models.DateField()
    installment_start_date = models.DateField(
        null=True,
        blank=True,
        help_text="Empty until installments are started"
    )
    maturity_date = models.DateField()
    completed_at = models.DateTimeField(null=True, blank=True)
    defaulted_at = models.DateTimeField(null=True, blank=True)
    default_reason = models.TextField(blank=True)

    # =========================================================================
    # BALANCES
    # =========================================================================

    pre_installment_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        help_text="Interest charged for the pre-installment period"
    )
    outstanding_principal = models.DecimalField(max_digits=12, decimal_places=2)
    total_interest_paid = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='active',
        db_index=True
    )

    objects = LoanManager()

    class Meta:
        ordering = ['-disbursed_on', '-created_at']
        verbose_name = "Loan"
        verbose_name_plural = "Loans"
        indexes = [
            models.Index(fields=['member', 'status']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(principal_amount__gt=0),
                name='loan_principal_positive'
            ),
            models.CheckConstraint(
                condition=Q(outstanding_principal__gte=0),
                name='loan_outstanding_positive'
            ),
            models.CheckConstraint(
                condition=Q(maturity_date__gt=F('disbursed_on')),
                name='loan_maturity_after_disbursement'
            ),
            models.CheckConstraint(
                condition=(
                    Q(installment_start_date__isnull=True)
                    | (
                        Q(installment_start_date__gte=F('disbursed_on'))
                        & Q(installment_start_date__lt=F('maturity_date'))
                    )
                ),
                name='loan_installment_start_in_term'
            ),
        ]

    def __str__(self):
        return f"{self.loan_number} - {self.member}"

    @property
    def installments_started(self):
        """False while the loan is in its pre-installment phase"""
        return self.installment_start_date is not None

    @property
    def is_active(self):
        return self.status == 'active'

    def save(self, *args, **kwargs):
        if self._state.adding and not self.loan_number:
            self.loan_number = self.generate_loan_number()
        super().save(*args, **kwargs)

    @staticmethod
    def generate_loan_number():
        timestamp = timezone.now().strftime('%Y%m%d%H%M%S')
        random_suffix = get_random_string(6, '0123456789')
        loan_number = f"LN{timestamp}{random_suffix}"
        while Loan.objects.filter(loan_number=loan_number).exists():
            random_suffix = get_random_string(6, '0123456789')
            loan_number = f"LN{timestamp}{random_suffix}"
        return loan_number

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _lock(self):
        return Loan.objects.select_for_update().get(pk=self.pk)

    @staticmethod
    def _ensure_active(loan):
        if loan.status != 'active':
            raise StateError(
                "Loan %(loan_number)s is %(status)s",
                code='loan_not_active',
                params={'loan_number': loan.loan_number, 'status': loan.status},
            )

    @staticmethod
    def _validate_payment_amount(amount):
        amount = to_decimal(amount)
        if amount <= 0 or amount != MoneyCalculator.round_money(amount):
            raise FundValidationError(
                "Payment amount must be a positive amount in whole paise: %(amount)s",
                code='invalid_amount',
                params={'amount': amount},
            )
        return amount

    @staticmethod
    def _complete_if_repaid(loan):
        if loan.outstanding_principal <= 0:
            loan.outstanding_principal = Decimal('0.00')
            loan.status = 'completed'
            loan.completed_at = timezone.now()
            logger.info(f"Loan completed: {loan.loan_number}")

    # =========================================================================
    # INSTALLMENTS
    # =========================================================================

    @serialized_operation
    def start_installments(self, start_date, installment_count=None):
        """
        End the pre-installment phase and generate the schedule

        Creates one PreInstallmentCharge for the gap between disbursement
        and start_date, then installment_count InstallmentEntry rows, the
        first due one month after start_date.

        Raises:
            StateError: loan_not_active, already_started
            FundValidationError: invalid_start, invalid_installment_count
        """
        start_date = to_date(start_date, 'start_date')
        loan = self._lock()
        self._ensure_active(loan)

        if loan.installments_started:
            raise StateError(
                "Installments already started on %(start)s",
                code='already_started',
                params={'start': loan.installment_start_date},
            )

        if start_date < loan.disbursed_on or start_date >= loan.maturity_date:
            raise FundValidationError(
                "Installment start %(start)s must be between %(disbursed)s and %(maturity)s",
                code='invalid_start',
                params={
                    'start': start_date,
                    'disbursed': loan.disbursed_on,
                    'maturity': loan.maturity_date,
                },
            )

        if installment_count is None:
            installment_count = FundSetting.objects.get_config().default_installment_months
        try:
            installment_count = int(installment_count)
        except (TypeError, ValueError):
            installment_count = 0
        if installment_count < 1:
            raise FundValidationError(
                "Installment count must be at least 1",
                code='invalid_installment_count',
                params={'installment_count': installment_count},
            )

        days = (start_date - loan.disbursed_on).days
        interest = InterestCalculator.calculate_pre_installment_interest(
            loan.principal_amount, loan.interest_rate, days
        )
        settled = interest == 0

        PreInstallmentCharge.objects.create(
            loan=loan,
            period_start=loan.disbursed_on,
            period_end=start_date,
            days_count=days,
            principal_amount=loan.principal_amount,
            interest_rate=loan.interest_rate,
            interest_amount=interest,
            due_date=start_date,
            is_paid=settled,
            paid_amount=Decimal('0.00') if settled else None,
            paid_on=start_date if settled else None,
        )

        schedule = InterestCalculator.generate_amortization_schedule(
            loan.outstanding_principal, loan.interest_rate, installment_count, start_date
        )
        InstallmentEntry.objects.bulk_create([
            InstallmentEntry(loan=loan, **row) for row in schedule
        ])

        loan.installment_start_date = start_date
        loan.pre_installment_amount = interest
        loan.save(update_fields=['installment_start_date', 'pre_installment_amount', 'updated_at'])

        logger.info(
            f"Installments started: {loan.loan_number}, Start={start_date}, Days={days}, "
            f"PreInstallmentInterest=₹{interest}, Installments={installment_count}, "
            f"EMI=₹{schedule[0]['total_amount']}"
        )

        self.refresh_from_db()
        return self

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    def apply_payment(self, amount, payment_date=None, target=None, recorded_by=None, notes=''):
        """
        Apply a payment to this loan

        Args:
            amount: Amount paid
            payment_date: Date paid (default: today)
            target: PreInstallmentCharge, InstallmentEntry or None for a
                    prepayment of principal
            recorded_by: Admin member recording the payment
            notes: Free text

        Returns:
            Payment: Created payment record
        """
        if target is None:
            return self.prepay(amount, payment_date, recorded_by=recorded_by, notes=notes)
        if isinstance(target, PreInstallmentCharge):
            return self.pay_pre_installment_charge(
                target, amount, payment_date, recorded_by=recorded_by, notes=notes
            )
        if isinstance(target, InstallmentEntry):
            return self.pay_installment(
                target, amount, payment_date, recorded_by=recorded_by, notes=notes
            )
        raise FundValidationError(
            "Unsupported payment target: %(target)s",
            code='invalid_target',
            params={'target': type(target).__name__},
        )

    def _lock_schedule_row(self, model, row, loan):
        locked = model.objects.select_for_update().filter(pk=row.pk, loan=loan).first()
        if locked is None:
            raise NotFoundError(
                "%(model)s not found for loan %(loan_number)s",
                code='not_found',
                params={'model': model._meta.verbose_name, 'loan_number': loan.loan_number},
            )
        if locked.is_paid:
            raise StateError(
                "%(model)s is already paid",
                code='already_paid',
                params={'model': model._meta.verbose_name},
            )
        return locked

    @serialized_operation
    def pay_pre_installment_charge(self, charge, amount, payment_date=None, recorded_by=None, notes=''):
        """Settle the pre-installment interest charge"""
        amount = self._validate_payment_amount(amount)
        payment_date = to_date(payment_date or timezone.now().date(), 'payment_date')

        loan = self._lock()
        self._ensure_active(loan)
        charge = self._lock_schedule_row(PreInstallmentCharge, charge, loan)

        charge.is_paid = True
        charge.paid_amount = amount
        charge.paid_on = payment_date
        charge.save(update_fields=['is_paid', 'paid_amount', 'paid_on', 'updated_at'])

        loan.total_interest_paid += amount
        loan.save(update_fields=['total_interest_paid', 'updated_at'])

        payment = Payment.objects.create(
            loan=loan,
            member=loan.member,
            amount=amount,
            interest_component=amount,
            payment_type='pre_installment',
            payment_date=payment_date,
            pre_installment_charge=charge,
            recorded_by=recorded_by,
            notes=notes,
        )

        logger.info(
            f"Pre-installment interest paid: {loan.loan_number}, Amount=₹{amount}, "
            f"Charged=₹{charge.interest_amount}"
        )
        self.refresh_from_db()
        return payment

    @serialized_operation
    def pay_installment(self, entry, amount, payment_date=None, recorded_by=None, notes=''):
        """Settle one installment; completes the loan when principal hits zero"""
        amount = self._validate_payment_amount(amount)
        payment_date = to_date(payment_date or timezone.now().date(), 'payment_date')

        loan = self._lock()
        self._ensure_active(loan)
        entry = self._lock_schedule_row(InstallmentEntry, entry, loan)

        if amount != entry.total_amount:
            logger.warning(
                f"Installment {entry.installment_number} of {loan.loan_number} paid with "
                f"₹{amount}, scheduled ₹{entry.total_amount}"
            )

        entry.is_paid = True
        entry.paid_amount = amount
        entry.paid_on = payment_date
        entry.save(update_fields=['is_paid', 'paid_amount', 'paid_on', 'updated_at'])

        old_outstanding = loan.outstanding_principal
        loan.outstanding_principal -= entry.principal_component
        loan.total_interest_paid += entry.interest_component
        self._complete_if_repaid(loan)
        loan.save(update_fields=[
            'outstanding_principal', 'total_interest_paid', 'status', 'completed_at', 'updated_at'
        ])

        payment = Payment.objects.create(
            loan=loan,
            member=loan.member,
            amount=amount,
            principal_component=entry.principal_component,
            interest_component=entry.interest_component,
            payment_type='installment',
            payment_date=payment_date,
            installment=entry,
            recorded_by=recorded_by,
            notes=notes,
        )

        logger.info(
            f"Installment paid: {loan.loan_number} #{entry.installment_number}, Amount=₹{amount}, "
            f"Outstanding=₹{old_outstanding} → ₹{loan.outstanding_principal}, Status={loan.status}"
        )
        self.refresh_from_db()
        return payment

    @serialized_operation
    def prepay(self, amount, payment_date=None, recorded_by=None, notes=''):
        """Pay principal directly, outside the schedule"""
        amount = self._validate_payment_amount(amount)
        payment_date = to_date(payment_date or timezone.now().date(), 'payment_date')

        loan = self._lock()
        self._ensure_active(loan)

        if amount > loan.outstanding_principal:
            raise StateError(
                "Amount exceeds outstanding principal of %(outstanding)s",
                code='exceeds_outstanding',
                params={'amount': amount, 'outstanding': loan.outstanding_principal},
            )

        old_outstanding = loan.outstanding_principal
        loan.outstanding_principal -= amount
        self._complete_if_repaid(loan)
        loan.save(update_fields=['outstanding_principal', 'status', 'completed_at', 'updated_at'])

        payment = Payment.objects.create(
            loan=loan,
            member=loan.member,
            amount=amount,
            principal_component=amount,
            payment_type='prepayment',
            payment_date=payment_date,
            recorded_by=recorded_by,
            notes=notes,
        )

        logger.info(
            f"Prepayment recorded: {loan.loan_number}, Amount=₹{amount}, "
            f"Outstanding=₹{old_outstanding} → ₹{loan.outstanding_principal}, Status={loan.status}"
        )
        self.refresh_from_db()
        return payment

    @serialized_operation
    def mark_defaulted(self, reason=''):
        """Administrative transition active → defaulted"""
        loan = self._lock()
        self._ensure_active(loan)

        loan.status = 'defaulted'
        loan.defaulted_at = timezone.now()
        loan.default_reason = reason
        loan.save(update_fields=['status', 'defaulted_at', 'default_reason', 'updated_at'])

        logger.warning(
            f"Loan marked defaulted: {loan.loan_number}, Outstanding=₹{loan.outstanding_principal}"
        )
        self.refresh_from_db()
        return self


class PreInstallmentCharge(AppendOnlyModel):
    """Compound interest due for the gap between disbursement and installments"""

    mutable_fields = ('is_paid', 'paid_amount', 'paid_on')

    loan = models.ForeignKey(
        'Loan',
        on_delete=models.PROTECT,
        related_name='pre_installment_charges'
    )

    period_start = models.DateField()
    period_end = models.DateField()
    days_count = models.PositiveIntegerField()

    principal_amount = models.DecimalField(max_digits=12, decimal_places=2)
    interest_rate = models.DecimalField(max_digits=5, decimal_places=2)
    interest_amount = models.DecimalField(max_digits=12, decimal_places=2)

    due_date = models.DateField(db_index=True)
    is_paid = models.BooleanField(default=False)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    paid_on = models.DateField(null=True, blank=True)

    objects = ScheduleManager()

    class Meta:
        ordering = ['due_date']
        verbose_name = "Pre-Installment Charge"
        verbose_name_plural = "Pre-Installment Charges"

    def __str__(self):
        return f"{self.loan.loan_number} - pre-installment ₹{self.interest_amount:,.2f}"


class InstallmentEntry(AppendOnlyModel):
    """One row of a reducing balance installment schedule"""

    mutable_fields = ('is_paid', 'paid_amount', 'paid_on')

    loan = models.ForeignKey(
        'Loan',
        on_delete=models.PROTECT,
        related_name='installments'
    )

    installment_number = models.PositiveIntegerField()
    due_date = models.DateField(db_index=True)

    principal_component = models.DecimalField(max_digits=12, decimal_places=2)
    interest_component = models.DecimalField(max_digits=12, decimal_places=2)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    outstanding_after = models.DecimalField(max_digits=12, decimal_places=2)

    is_paid = models.BooleanField(default=False)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    paid_on = models.DateField(null=True, blank=True)

    objects = ScheduleManager()

    class Meta:
        ordering = ['loan', 'installment_number']
        verbose_name = "Installment"
        verbose_name_plural = "Installments"
        constraints = [
            models.UniqueConstraint(
                fields=['loan', 'installment_number'],
                name='unique_loan_installment'
            ),
        ]

    def __str__(self):
        return f"{self.loan.loan_number} - Installment {self.installment_number}"


class Payment(AppendOnlyModel):
    """Append-only record of money received against a loan"""

    PAYMENT_TYPE_CHOICES = [
        ('pre_installment', 'Pre-Installment Interest'),
        ('installment', 'Installment'),
        ('prepayment', 'Prepayment'),
    ]

    loan = models.ForeignKey('Loan', on_delete=models.PROTECT, related_name='payments')
    member = models.ForeignKey('Member', on_delete=models.PROTECT, related_name='payments')

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    principal_component = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    interest_component = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    payment_type = models.CharField(max_length=20, choices=PAYMENT_TYPE_CHOICES, db_index=True)
    payment_date = models.DateField()

    pre_installment_charge = models.ForeignKey(
        'PreInstallmentCharge',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payments'
    )
    installment = models.ForeignKey(
        'InstallmentEntry',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payments'
    )

    notes = models.TextField(blank=True)
    recorded_by = models.ForeignKey(
        'Member',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recorded_payments'
    )

    class Meta:
        ordering = ['-payment_date', '-created_at']
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='payment_amount_positive'),
        ]

    def __str__(self):
        return f"{self.loan.loan_number} - {self.get_payment_type_display()} ₹{self.amount:,.2f}"


# =============================================================================
# DISTRIBUTION
# =============================================================================

class PoolSnapshot(BaseModel):
    """
    Frozen pool composition for one fund-month

    Distributions always read a finalized snapshot; once finalized the
    snapshot and its member rows can no longer change.
    """

    fund_month = models.PositiveIntegerField(unique=True)
    month_label = models.CharField(max_length=7, help_text="e.g. 2025-03")
    total_pool_amount = models.DecimalField(max_digits=12, decimal_places=2)
    total_pool_units = models.PositiveIntegerField()
    cumulative_pool_units = models.PositiveIntegerField()

    is_finalized = models.BooleanField(default=False)
    finalized_at = models.DateTimeField(null=True, blank=True)
    finalized_by = models.ForeignKey(
        'Member',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='finalized_snapshots'
    )

    objects = PoolSnapshotManager()

    class Meta:
        ordering = ['-fund_month']
        verbose_name = "Pool Snapshot"
        verbose_name_plural = "Pool Snapshots"

    def __str__(self):
        return f"Fund month {self.fund_month} ({self.month_label})"

    @property
    def member_units(self):
        """{member_id: cumulative_units} for every member in the snapshot"""
        return dict(self.members.values_list('member_id', 'cumulative_units'))

    def _stored_finalized(self):
        return PoolSnapshot.objects.filter(pk=self.pk, is_finalized=True).exists()

    def _refuse_change(self):
        raise StateError(
            "Snapshot for fund month %(fund_month)s is finalized",
            code='snapshot_immutable',
            params={'fund_month': self.fund_month},
        )

    def save(self, *args, **kwargs):
        if not self._state.adding and self._stored_finalized():
            self._refuse_change()
        super().save(*args, **kwargs)

    def delete(self, using=None, keep_parents=False):
        if self._stored_finalized():
            self._refuse_change()
        return super().delete(using=using, keep_parents=keep_parents)

    @serialized_operation
    def finalize(self, finalized_by=None):
        """Freeze a draft snapshot"""
        snapshot = PoolSnapshot.objects.select_for_update().get(pk=self.pk)
        if snapshot.is_finalized:
            raise StateError(
                "Snapshot for fund month %(fund_month)s is already finalized",
                code='already_finalized',
                params={'fund_month': snapshot.fund_month},
            )
        snapshot.is_finalized = True
        snapshot.finalized_at = timezone.now()
        snapshot.finalized_by = finalized_by
        snapshot.save(update_fields=['is_finalized', 'finalized_at', 'finalized_by', 'updated_at'])

        logger.info(f"Pool snapshot finalized: fund month {snapshot.fund_month}")
        self.refresh_from_db()
        return self


class PoolSnapshotMember(AppendOnlyModel):
    """Member's cumulative units inside a pool snapshot"""

    immutable_error_code = 'snapshot_immutable'

    snapshot = models.ForeignKey('PoolSnapshot', on_delete=models.CASCADE, related_name='members')
    member = models.ForeignKey('Member', on_delete=models.PROTECT, related_name='snapshot_rows')
    total_deposits = models.DecimalField(max_digits=12, decimal_places=2)
    cumulative_units = models.PositiveIntegerField()

    class Meta:
        ordering = ['snapshot', '-cumulative_units']
        verbose_name = "Pool Snapshot Member"
        verbose_name_plural = "Pool Snapshot Members"
        constraints = [
            models.UniqueConstraint(fields=['snapshot', 'member'], name='unique_snapshot_member'),
        ]

    def __str__(self):
        return f"{self.snapshot} - {self.member}: {self.cumulative_units} units"


class InterestEntry(AppendOnlyModel):
    """Interest earned by the pool, distributed over a snapshot"""

    SOURCE_CHOICES = [
        ('loan_interest', 'Loan Interest'),
        ('bank_interest', 'Bank Interest'),
        ('other', 'Other'),
    ]

    earned_month = models.PositiveIntegerField(db_index=True)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES)
    source_description = models.TextField(blank=True)
    loan = models.ForeignKey(
        'Loan',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='interest_entries'
    )
    pool_source_month = models.PositiveIntegerField(db_index=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    notes = models.TextField(blank=True)
    recorded_by = models.ForeignKey(
        'Member',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recorded_interest_entries'
    )

    objects = InterestEntryManager()

    class Meta:
        ordering = ['-earned_month', '-created_at']
        verbose_name = "Interest Entry"
        verbose_name_plural = "Interest Entries"
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='interest_entry_amount_positive'),
        ]

    def __str__(self):
        return f"Month {self.earned_month} {self.get_source_display()} ₹{self.amount:,.2f}"

    @property
    def distributed_total(self):
        return self.shares.aggregate(
            total=models.Sum('interest_share')
        )['total'] or Decimal('0.00')

    @property
    def distribution_residual(self):
        """Amount minus the rounded member shares; left unreconciled"""
        return self.amount - self.distributed_total


class MemberInterestShare(AppendOnlyModel):
    """A member's pro-rata share of one interest entry"""

    member = models.ForeignKey('Member', on_delete=models.PROTECT, related_name='interest_shares')
    interest_entry = models.ForeignKey('InterestEntry', on_delete=models.PROTECT, related_name='shares')
    member_cumulative_units = models.PositiveIntegerField()
    total_pool_units = models.PositiveIntegerField()
    share_percentage = models.DecimalField(max_digits=8, decimal_places=4)
    interest_share = models.DecimalField(max_digits=12, decimal_places=2)

    objects = MemberInterestShareManager()

    class Meta:
        ordering = ['interest_entry', '-member_cumulative_units']
        verbose_name = "Member Interest Share"
        verbose_name_plural = "Member Interest Shares"
        constraints = [
            models.UniqueConstraint(
                fields=['member', 'interest_entry'],
                name='unique_member_interest_share'
            ),
        ]

    def __str__(self):
        return f"{self.member} - ₹{self.interest_share:,.2f}"


# =============================================================================
# FUND LEDGER (RESERVE)
# =============================================================================

class FundLedgerBalance(BaseModel):
    """Running balance of pool-earned interest held as a reserve"""

    RESERVE_CODE = 'reserve'

    code = models.CharField(max_length=20, unique=True, default=RESERVE_CODE)
    total_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    last_interest_month = models.PositiveIntegerField(default=0)

    class Meta:
        verbose_name = "Fund Ledger Balance"
        verbose_name_plural = "Fund Ledger Balances"

    def __str__(self):
        return f"{self.code}: ₹{self.total_balance:,.2f}"


class FundLedgerTransaction(AppendOnlyModel):
    """Append-only audit trail of every reserve balance change"""

    TRANSACTION_TYPE_CHOICES = [
        ('interest_credit', 'Interest Credit'),
        ('loan_disbursement', 'Loan Disbursement'),
        ('loan_repayment', 'Loan Repayment'),
        ('adjustment', 'Adjustment'),
    ]

    transaction_type = models.CharField(max_length=20, choices=TRANSACTION_TYPE_CHOICES, db_index=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2, help_text="Signed change")
    balance_after = models.DecimalField(max_digits=12, decimal_places=2)
    interest_entry = models.ForeignKey(
        'InterestEntry',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='ledger_transactions'
    )
    loan = models.ForeignKey(
        'Loan',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='ledger_transactions'
    )
    description = models.TextField(blank=True)
    recorded_by = models.ForeignKey(
        'Member',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recorded_ledger_transactions'
    )

    objects = FundLedgerTransactionManager()

    class Meta:
        ordering = ['-created_at']
        verbose_name = "Fund Ledger Transaction"
        verbose_name_plural = "Fund Ledger Transactions"

    def __str__(self):
        return f"{self.get_transaction_type_display()} ₹{self.amount:,.2f} → ₹{self.balance_after:,.2f}"
