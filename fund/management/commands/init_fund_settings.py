"""
Management command to initialize the fund configuration for Saarthi Fund

This command creates:
- Fund Settings (deposit unit, pool percentage, loan limits, tenure)
- Interest Brackets (multiplier ranges → annual rate)

Usage:
    python manage.py init_fund_settings
    python manage.py init_fund_settings --reset  # Restore defaults over existing values
"""

from django.core.management.base import BaseCommand
from django.db import transaction
from fund.models import (
    DEFAULT_FUND_SETTINGS, DEFAULT_INTEREST_BRACKETS, FundSetting, InterestBracket,
)


class Command(BaseCommand):
    help = 'Initialize fund settings and the default interest bracket table'

    def add_arguments(self, parser):
        parser.add_argument(
            '--reset',
            action='store_true',
            help='Overwrite settings with defaults and recreate the bracket table',
        )

    @transaction.atomic
    def handle(self, *args, **options):
        reset = options['reset']

        if reset:
            self.stdout.write(self.style.WARNING('Deleting existing interest brackets...'))
            InterestBracket.objects.all().delete()

        self.stdout.write(self.style.SUCCESS('\n=== Initializing Fund Settings ===\n'))

        self.create_settings(reset)
        self.create_interest_brackets()

        self.stdout.write(self.style.SUCCESS('\n[SUCCESS] Fund configuration initialized successfully!\n'))

    def create_settings(self, reset):
        """Create (or with --reset, restore) the default tunables"""
        self.stdout.write('Creating Fund Settings...')

        for key, (value, description) in DEFAULT_FUND_SETTINGS.items():
            exists = FundSetting.objects.filter(setting_key=key).exists()
            if exists and not reset:
                current = FundSetting.objects.get_value(key)
                self.stdout.write(f'  [*] Exists: {key} = {current}')
                continue

            FundSetting.objects.set_value(key, value, description)
            marker = '[~] Reset' if exists else '[+] Created'
            self.stdout.write(f'  {marker}: {key} = {value}')

    def create_interest_brackets(self):
        """Create the default bracket table unless active brackets exist"""
        self.stdout.write('Creating Interest Brackets...')

        if InterestBracket.objects.active().exists():
            self.stdout.write(
                f'  [*] Exists: {InterestBracket.objects.active().count()} active brackets'
            )
            return

        for min_multiplier, max_multiplier, rate in DEFAULT_INTEREST_BRACKETS:
            bracket = InterestBracket.objects.create(
                min_multiplier=min_multiplier,
                max_multiplier=max_multiplier,
                interest_rate=rate,
            )
            self.stdout.write(f'  [+] Created: {bracket}')

        # Print summary
        self.stdout.write('\n--- Summary ---')
        self.stdout.write(f'Settings: {FundSetting.objects.count()}')
        self.stdout.write(f'Active Brackets: {InterestBracket.objects.active().count()}')
