from django.core.management.base import BaseCommand

from accounts.rbac_defaults import DEFAULT_ROLES, ensure_default_roles


class Command(BaseCommand):
    help = 'Create the default system roles if they are missing'

    def handle(self, *args, **options):
        created = ensure_default_roles()
        if created:
            self.stdout.write(self.style.SUCCESS(f'Created {created} role(s).'))
        else:
            self.stdout.write(f'All {len(DEFAULT_ROLES)} default roles already exist.')
