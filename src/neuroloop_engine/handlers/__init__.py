# Import all handlers so they register themselves.
from . import recovery_actions  # noqa: F401
from . import session_completed  # noqa: F401
from . import content_override  # noqa: F401
