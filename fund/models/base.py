"""
Base Models and Mixins for the Fund
===================================

Provides:
- UUID primary keys
- Common timestamp fields
- Active/inactive status tracking
- Append-only (immutable) records
"""

from django.db import models
from django.utils import timezone
import uuid


class BaseModel(models.Model):
    """
    Base model with common fields

    Features:
    - UUID primary key
    - Timestamp tracking (created, updated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    # Timestamps
    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="When this record was created"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When this record was last updated"
    )

    class Meta:
        abstract = True
        ordering = ['-created_at']


class AppendOnlyModel(BaseModel):
    """
    Base model for audit records that are written once

    Existing rows may only be re-saved with an explicit ``update_fields``
    limited to ``mutable_fields``; anything else raises ``StateError``.
    Deleting is refused outright.
    """

    mutable_fields = ()
    immutable_error_code = 'record_immutable'

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get('update_fields')
            allowed = set(self.mutable_fields) | {'updated_at'}
            if update_fields is None or not set(update_fields) <= allowed:
                from fund.exceptions import StateError
                raise StateError(
                    "%(model)s records cannot be modified once saved",
                    code=self.immutable_error_code,
                    params={'model': self._meta.verbose_name},
                )
        super().save(*args, **kwargs)

    def delete(self, using=None, keep_parents=False):
        from fund.exceptions import StateError
        raise StateError(
            "%(model)s records cannot be deleted",
            code=self.immutable_error_code,
            params={'model': self._meta.verbose_name},
        )


class StatusTrackingMixin(models.Model):
    """
    Mixin for models with status tracking

    Provides common status fields
    """

    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Is this record active?"
    )

    deactivated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When this record was deactivated"
    )

    class Meta:
        abstract = True

    def activate(self):
        """Activate the record"""
        self.is_active = True
        self.deactivated_at = None
        self.save(update_fields=['is_active', 'deactivated_at', 'updated_at'])

    def deactivate(self):
        """Deactivate the record"""
        self.is_active = False
        self.deactivated_at = timezone.now()
        self.save(update_fields=['is_active', 'deactivated_at', 'updated_at'])
