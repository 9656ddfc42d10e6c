"""Auto-import builtin tool modules to trigger @register_tool decorators."""
from . import util
from . import action
from . import bitcoin
from . import mempool
from . import magic_eden
