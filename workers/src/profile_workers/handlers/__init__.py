# Import all handlers so they register themselves.
# Activities must be registered before any saga can call them.
from . import validation_activities  # noqa: F401
from . import email_validation  # noqa: F401
from . import migrate_preferences  # noqa: F401
from . import profile_upserted  # noqa: F401
