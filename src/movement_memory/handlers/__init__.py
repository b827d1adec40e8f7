# Import all handlers so they register themselves.
from . import movement_memory  # noqa: F401
from . import router  # noqa: F401
