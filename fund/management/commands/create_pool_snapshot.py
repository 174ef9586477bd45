"""
Management command to freeze the pool composition of a fund-month

Usage:
    python manage.py create_pool_snapshot 14 2025-03
    python manage.py create_pool_snapshot 14 2025-03 --draft  # Finalize later
"""

from django.core.management.base import BaseCommand, CommandError
from fund.exceptions import FundError
from fund.models import PoolSnapshot


class Command(BaseCommand):
    help = 'Create the pool snapshot for a fund-month'

    def add_arguments(self, parser):
        parser.add_argument('fund_month', type=int, help='Fund-relative month number')
        parser.add_argument('month_label', help='Calendar label, e.g. 2025-03')
        parser.add_argument(
            '--draft',
            action='store_true',
            help='Leave the snapshot unfinalized',
        )

    def handle(self, *args, **options):
        try:
            snapshot = PoolSnapshot.objects.create_snapshot(
                options['fund_month'],
                options['month_label'],
                finalize=not options['draft'],
            )
        except FundError as e:
            raise CommandError(str(e))

        status = 'finalized' if snapshot.is_finalized else 'draft'
        self.stdout.write(self.style.SUCCESS(
            f'Snapshot for fund month {snapshot.fund_month} ({snapshot.month_label}) created, {status}'
        ))
        self.stdout.write(f'  Pool: ₹{snapshot.total_pool_amount:,.2f}')
        self.stdout.write(f'  Units: {snapshot.cumulative_pool_units}')
        self.stdout.write(f'  Members: {snapshot.members.count()}')
