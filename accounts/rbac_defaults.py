"""Default role catalog seeded into the master database."""
from .models import Role


DEFAULT_ROLES = [
    {
        "name": "Administrator",
        "description": "Full access, including registration approval and user assignment.",
        "color": "#e11d48",
        "priority": 100,
        "is_system": True,
    },
    {
        "name": "Management",
        "description": "Branch management: schedules, authorizations, and cash requests.",
        "color": "#2563eb",
        "priority": 50,
        "is_system": True,
    },
    {
        "name": "Service Crew",
        "description": "Front-line staff.",
        "color": "#16a34a",
        "priority": 10,
        "is_system": True,
    },
]


def ensure_default_roles():
    """Create any missing roles from the default catalog."""
    created = 0
    for entry in DEFAULT_ROLES:
        name = entry["name"]
        defaults = {key: value for key, value in entry.items() if key != "name"}
        _, was_created = Role.objects.get_or_create(name=name, defaults=defaults)
        if was_created:
            created += 1
    return created
