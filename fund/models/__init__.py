"""
Saarthi Fund - Complete Models Package
======================================

This file imports and exposes all models for Django.
"""

# First, import base classes
from .base import (
    BaseModel,
    AppendOnlyModel,
    StatusTrackingMixin
)

# Import all models from the consolidated models module
from .all_models import (

    # Constants
    DEFAULT_INTEREST_RATE,
    DEFAULT_MAX_MULTIPLIER,
    DEFAULT_FUND_SETTINGS,
    DEFAULT_INTEREST_BRACKETS,
    UNBOUNDED,

    # Value objects
    FundConfig,
    Eligibility,

    # Members & Configuration
    Member,
    FundSetting,
    InterestBracket,

    # Ledger
    Deposit,

    # Loans
    Loan,
    PreInstallmentCharge,
    InstallmentEntry,
    Payment,

    # Distribution
    PoolSnapshot,
    PoolSnapshotMember,
    InterestEntry,
    MemberInterestShare,

    # Fund Ledger
    FundLedgerBalance,
    FundLedgerTransaction,
)

__all__ = [
    # Base Classes
    'BaseModel',
    'AppendOnlyModel',
    'StatusTrackingMixin',

    # Constants
    'DEFAULT_INTEREST_RATE',
    'DEFAULT_MAX_MULTIPLIER',
    'DEFAULT_FUND_SETTINGS',
    'DEFAULT_INTEREST_BRACKETS',
    'UNBOUNDED',

    # Value objects
    'FundConfig',
    'Eligibility',

    # Members & Configuration
    'Member',
    'FundSetting',
    'InterestBracket',

    # Ledger
    'Deposit',

    # Loans
    'Loan',
    'PreInstallmentCharge',
    'InstallmentEntry',
    'Payment',

    # Distribution
    'PoolSnapshot',
    'PoolSnapshotMember',
    'InterestEntry',
    'MemberInterestShare',

    # Fund Ledger
    'FundLedgerBalance',
    'FundLedgerTransaction',
]
