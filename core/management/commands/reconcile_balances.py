"""Recompute cached credit balances from the ledger and report drift."""

from django.core.management.base import BaseCommand, CommandError

from core.models import User
from core.services import LedgerServices


class Command(BaseCommand):
	help = "Overwrite users' cached credits_balance with the sum of their CONFIRMED ledger entries."

	def add_arguments(self, parser):
		parser.add_argument("--user", dest="user_id", help="Reconcile a single user id (default: everyone)")

	def handle(self, *args, user_id=None, **options):
		if user_id:
			try:
				runs = [LedgerServices.reconcile_run(user_id)]
			except User.DoesNotExist:
				raise CommandError(f"unknown user {user_id}")
		else:
			runs = LedgerServices.reconcile_all()

		drifted = 0
		for run in runs:
			if not run.ok:
				drifted += 1
				self.stdout.write(f"{run.user_id}: cached {run.cached_balance} -> ledger {run.ledger_balance} (drift {run.drift})")
		self.stdout.write(self.style.SUCCESS(f"reconciled {len(runs)} user(s), {drifted} drifted"))
