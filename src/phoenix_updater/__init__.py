"""
Phoenix Updater - game installation update and migration engine.

This package downloads a game release, swaps it in for the current
installation, and carries the user's saves, configuration and custom content
(mods, tilesets, soundpacks, fonts) into the new version, restoring the
previous installation if anything goes wrong.
"""

__version__ = "0.1.0"
