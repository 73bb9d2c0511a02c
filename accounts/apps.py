import logging
import sys

from django.apps import AppConfig

logger = logging.getLogger(__name__)


def _is_server_process():
    return 'runserver' in sys.argv or 'gunicorn' in sys.argv[0]


class AccountsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'accounts'

    def ready(self):
        """Register every company database alias when the web server boots."""
        if not _is_server_process():
            return

        from accounts.database_utils import load_all_tenant_databases

        try:
            count = load_all_tenant_databases()
        except Exception as exc:
            # aliases are registered lazily by ensure_tenant_database_loaded
            logger.warning("Tenant database aliases not preloaded: %s", exc)
            return
        logger.info("Preloaded %s tenant database aliases", count)
