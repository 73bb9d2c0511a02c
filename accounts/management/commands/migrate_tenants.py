import sys

from django.core.management import BaseCommand, call_command

from accounts.database_utils import ensure_tenant_database_loaded, load_all_tenant_databases
from accounts.models import Company


class Command(BaseCommand):
    help = "Apply the tenant app migrations (branches, local employees) to every company database."

    def add_arguments(self, parser):
        parser.add_argument(
            "--company",
            dest="company_id",
            type=int,
            help="Only migrate the database of this company id.",
        )
        parser.add_argument(
            "--include-default",
            action="store_true",
            help="Migrate the master database first.",
        )

    def handle(self, *args, **options):
        verbosity = options.get("verbosity", 1)

        if options.get("include_default"):
            self.stdout.write(self.style.WARNING("Migrating master database..."))
            call_command("migrate", database="default", verbosity=verbosity)

        load_all_tenant_databases()

        companies = Company.objects.filter(database_created=True, database_name__isnull=False).order_by("id")
        if options.get("company_id"):
            companies = companies.filter(id=options["company_id"])

        total = companies.count()
        if not total:
            self.stdout.write(self.style.WARNING("No company databases to migrate."))
            return

        failed = []
        for position, company in enumerate(companies, start=1):
            alias = ensure_tenant_database_loaded(company)
            self.stdout.write(f"[{position}/{total}] {company.name} -> {alias}")
            try:
                call_command("migrate", "employees", database=alias, verbosity=verbosity)
            except Exception as exc:
                failed.append(alias)
                self.stderr.write(self.style.ERROR(f"{alias}: {exc}"))

        if failed:
            self.stderr.write(self.style.ERROR(f"Failed: {', '.join(failed)}"))
            sys.exit(1)

        self.stdout.write(self.style.SUCCESS(f"Migrated {total} company database(s)."))
