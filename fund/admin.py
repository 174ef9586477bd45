from django.contrib import admin
from .models import (
    Member, FundSetting, InterestBracket, Deposit,
    Loan, PreInstallmentCharge, InstallmentEntry, Payment,
    PoolSnapshot, PoolSnapshotMember, InterestEntry, MemberInterestShare,
    FundLedgerBalance, FundLedgerTransaction
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Append-only records: viewable, never edited or deleted from the admin"""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


# ==============================================================================
# MEMBERS & CONFIGURATION
# ==============================================================================

@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ['full_name', 'email', 'phone', 'role', 'status', 'joined_at']
    list_filter = ['role', 'status']
    search_fields = ['full_name', 'email', 'phone']
    readonly_fields = ['created_at', 'updated_at']


@admin.register(FundSetting)
class FundSettingAdmin(admin.ModelAdmin):
    list_display = ['setting_key', 'setting_value', 'description', 'updated_at']
    search_fields = ['setting_key']
    readonly_fields = ['created_at', 'updated_at']

    def get_readonly_fields(self, request, obj=None):
        # The key identifies the row set_value writes to
        if obj is not None:
            return ['setting_key'] + self.readonly_fields
        return self.readonly_fields

    def save_model(self, request, obj, form, change):
        # Validated write path
        FundSetting.objects.set_value(obj.setting_key, obj.setting_value, obj.description)


@admin.register(InterestBracket)
class InterestBracketAdmin(admin.ModelAdmin):
    list_display = ['min_multiplier', 'max_multiplier', 'interest_rate', 'is_active']
    list_filter = ['is_active']
    readonly_fields = ['deactivated_at', 'created_at', 'updated_at']


# ==============================================================================
# LEDGER & LOANS
# ==============================================================================

@admin.register(Deposit)
class DepositAdmin(ReadOnlyAdmin):
    list_display = ['member', 'member_month', 'amount', 'cumulative_total',
                   'deposit_date', 'recorded_by']
    list_filter = ['deposit_date']
    search_fields = ['member__full_name', 'member__email']
    date_hierarchy = 'deposit_date'


@admin.register(Loan)
class LoanAdmin(admin.ModelAdmin):
    list_display = ['loan_number', 'member', 'principal_amount', 'interest_rate',
                   'outstanding_principal', 'status', 'disbursed_on']
    list_filter = ['status']
    search_fields = ['loan_number', 'member__full_name']
    readonly_fields = [field.name for field in Loan._meta.fields]

    fieldsets = (
        ('Loan Details', {
            'fields': ('loan_number', 'member', 'approved_by', 'status', 'pool_source_month')
        }),
        ('Terms', {
            'fields': ('principal_amount', 'interest_rate', 'multiplier_at_disbursement')
        }),
        ('Eligibility Snapshot', {
            'fields': ('total_deposits_at_loan', 'total_pool_at_loan', 'max_eligible_at_loan'),
            'classes': ('collapse',)
        }),
        ('Timeline', {
            'fields': ('disbursed_on', 'installment_start_date', 'maturity_date',
                      'completed_at', 'defaulted_at', 'default_reason')
        }),
        ('Repayment Tracking', {
            'fields': ('pre_installment_amount', 'outstanding_principal', 'total_interest_paid')
        }),
    )

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PreInstallmentCharge)
class PreInstallmentChargeAdmin(ReadOnlyAdmin):
    list_display = ['loan', 'days_count', 'interest_amount', 'due_date', 'is_paid', 'paid_on']
    list_filter = ['is_paid']
    search_fields = ['loan__loan_number']


@admin.register(InstallmentEntry)
class InstallmentEntryAdmin(ReadOnlyAdmin):
    list_display = ['loan', 'installment_number', 'due_date', 'total_amount',
                   'outstanding_after', 'is_paid']
    list_filter = ['is_paid', 'loan__status']
    search_fields = ['loan__loan_number']


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdmin):
    list_display = ['loan', 'payment_type', 'amount', 'principal_component',
                   'interest_component', 'payment_date']
    list_filter = ['payment_type']
    search_fields = ['loan__loan_number', 'member__full_name']
    date_hierarchy = 'payment_date'


# ==============================================================================
# DISTRIBUTION & FUND LEDGER
# ==============================================================================

class PoolSnapshotMemberInline(admin.TabularInline):
    model = PoolSnapshotMember
    fields = ['member', 'total_deposits', 'cumulative_units']
    readonly_fields = fields
    extra = 0
    can_delete = False


@admin.register(PoolSnapshot)
class PoolSnapshotAdmin(ReadOnlyAdmin):
    list_display = ['fund_month', 'month_label', 'total_pool_amount',
                   'cumulative_pool_units', 'is_finalized', 'finalized_at']
    list_filter = ['is_finalized']
    inlines = [PoolSnapshotMemberInline]


@admin.register(InterestEntry)
class InterestEntryAdmin(ReadOnlyAdmin):
    list_display = ['earned_month', 'source', 'amount', 'pool_source_month', 'loan', 'created_at']
    list_filter = ['source', 'earned_month']
    search_fields = ['source_description', 'notes']


@admin.register(MemberInterestShare)
class MemberInterestShareAdmin(ReadOnlyAdmin):
    list_display = ['member', 'interest_entry', 'member_cumulative_units',
                   'share_percentage', 'interest_share']
    search_fields = ['member__full_name']


@admin.register(FundLedgerBalance)
class FundLedgerBalanceAdmin(ReadOnlyAdmin):
    list_display = ['code', 'total_balance', 'last_interest_month', 'updated_at']


@admin.register(FundLedgerTransaction)
class FundLedgerTransactionAdmin(ReadOnlyAdmin):
    list_display = ['transaction_type', 'amount', 'balance_after', 'description', 'created_at']
    list_filter = ['transaction_type']
    search_fields = ['description']
