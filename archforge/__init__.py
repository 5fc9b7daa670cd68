"""ArchForge: deterministic scaffolding for Clean Architecture projects."""

from archforge.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
