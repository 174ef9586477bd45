"""
Fund Utilities Package
======================

Provides utility functions for:
- Money and interest calculations
- Transaction and date helpers
- Fund ledger postings
- Excel export (Pandas/openpyxl)

Import directly from submodules to avoid circular imports:
    from fund.utils.money import InterestCalculator
    from fund.utils.ledger_helpers import record_adjustment
    from fund.utils.excel_export import export_deposit_history_excel
"""
