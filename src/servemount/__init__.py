"""
servemount — scoped mount lifecycle manager.

Mount something, run a program inside it, and always unmount afterwards.
The mount is guaranteed ready before the program starts and torn down
no matter how the program (or servemount itself) exits.
"""

__version__ = "0.1.0"

CONFIG_ENV = "SERVEMOUNT_CONFIG"
DEFAULT_CONFIG_PATH = "~/.config/servemount/config.yaml"
