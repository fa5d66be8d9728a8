"""Persist Watcher: keeps target files restored from persistent copies.

Watches each configured target path and, whenever external automation
overwrites, deletes or recreates it, restores it atomically from its
persistent source-of-truth file.
"""

__version__ = "1.0.0"
__app_name__ = "Persist Watcher"
