from .bot import register_bot_commands
from .utils import raise_exit

__all__ = ["raise_exit", "register_bot_commands"]
