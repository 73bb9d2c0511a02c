"""
Utility functions for multi-tenant database management
"""
from django.conf import settings
from django.db import connections
import logging

logger = logging.getLogger(__name__)


def add_tenant_database_to_settings(db_name, company_id):
    """
    Dynamically add tenant database configuration to Django settings
    """
    alias = f"tenant_{company_id}"
    default_db = settings.DATABASES['default']

    config = dict(default_db)
    config['NAME'] = db_name
    settings.DATABASES[alias] = config

    # Ensure the connection is available
    connections.databases[alias] = settings.DATABASES[alias]

    logger.info("Added database configuration for alias: %s", alias)
    return alias


def get_tenant_database_alias(company):
    """
    Get the database alias for a company's tenant database
    Returns 'default' if no tenant database exists
    """
    if company and company.database_created and company.database_name:
        return f"tenant_{company.id}"
    return 'default'


def ensure_tenant_database_loaded(company):
    """Return the company's alias, registering its connection on first use."""
    alias = get_tenant_database_alias(company)
    if alias != 'default' and alias not in connections.databases:
        add_tenant_database_to_settings(company.database_name, company.id)
    return alias


def load_all_tenant_databases():
    """
    Load every provisioned tenant database into Django settings.
    Called on startup so tenant aliases resolve without a lookup per request.
    """
    from accounts.models import Company

    loaded = 0
    companies = Company.objects.using('default').filter(database_created=True, database_name__isnull=False)
    for company in companies:
        try:
            ensure_tenant_database_loaded(company)
            loaded += 1
        except Exception:
            logger.exception("Error loading tenant database for company %s", company.id)
    logger.info("Loaded %s tenant database(s)", loaded)
    return loaded


def iter_active_tenants():
    """Yield (company, alias) for every active company."""
    from accounts.models import Company

    for company in Company.objects.using('default').filter(is_active=True).order_by('id'):
        yield company, ensure_tenant_database_loaded(company)
