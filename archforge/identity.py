"""Project identity strings shared by the CLI and the package root."""

__version__ = "0.4.0"
__codename__ = "ARCHFORGE"
__tagline__ = "Clean Architecture, scaffolded safely"

BANNER = r"""
   _   ___  ___ _  _ ___ ___  ___  ___ ___
  /_\ | _ \/ __| || | __/ _ \| _ \/ __| __|
 / _ \|   / (__| __ | _| (_) |   / (_ | _|
/_/ \_\_|_\\___|_||_|_| \___/|_|_\\___|___|
"""
