"""
Database router for the master/company database split.

Users, companies, identities and assignment snapshots live in the master ('default')
database. Branches and local employee records live in each company's own database,
selected by a ``tenant_db`` hint or the database of the instance being saved.
"""
from django.conf import settings

MASTER_DB = 'default'


class TenantDatabaseRouter:
    TENANT_APP_LABELS = ['employees']

    def _route(self, model, **hints):
        if model._meta.app_label not in self.TENANT_APP_LABELS:
            return MASTER_DB

        if hints.get('tenant_db'):
            return hints['tenant_db']

        instance = hints.get('instance')
        if instance is not None and instance._state.db:
            return instance._state.db

        return getattr(settings, 'CURRENT_TENANT_DB', None) or MASTER_DB

    def db_for_read(self, model, **hints):
        return self._route(model, **hints)

    def db_for_write(self, model, **hints):
        return self._route(model, **hints)

    def allow_relation(self, obj1, obj2, **hints):
        if obj1._state.db and obj2._state.db:
            return obj1._state.db == obj2._state.db
        return None

    def allow_migrate(self, db, app_label, model_name=None, **hints):
        """Company databases only carry the tenant apps; the master carries everything."""
        if db == MASTER_DB:
            return True
        if db.startswith('tenant_'):
            return app_label in self.TENANT_APP_LABELS
        return None
