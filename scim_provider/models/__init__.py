"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `scim_provider/main.py` (scripts, one-off jobs, tests).
"""

# Import side-effects: register ORM mappings.
from scim_provider.models import identity  # noqa: F401
