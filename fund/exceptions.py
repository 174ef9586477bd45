"""
Fund Exceptions
===============

Typed errors raised by the fund ledger and loan engine.

Every error is a Django ``ValidationError`` carrying a ``code`` (what went
wrong) and ``params`` (the offending values), so callers can both show the
message and branch on the code:

    try:
        member.record_deposit(Decimal('500'), 1, date.today())
    except FundValidationError as e:
        e.code      # 'invalid_amount'
        e.params    # {'amount': Decimal('500'), 'unit': Decimal('300')}

Categories:
- FundValidationError: bad input, rejected before any write
- EligibilityError:    business-rule rejection (limits, eligibility)
- StateError:          operation would break an invariant
- NotFoundError:       referenced record absent
- ConcurrencyError:    aggregate write conflict, safe to retry
"""

from django.core.exceptions import ObjectDoesNotExist, ValidationError


class FundError(ValidationError):
    """Base class for all fund errors"""

    default_code = 'fund_error'

    def __init__(self, message, code=None, params=None):
        super().__init__(message, code=code or self.default_code, params=params or {})

    def __str__(self):
        return self.message % self.params if self.params else self.message


class FundValidationError(FundError):
    default_code = 'invalid'


class EligibilityError(FundError):
    default_code = 'not_eligible'


class StateError(FundError):
    default_code = 'invalid_state'


class NotFoundError(FundError, ObjectDoesNotExist):
    default_code = 'not_found'


class ConcurrencyError(FundError):
    default_code = 'write_conflict'
