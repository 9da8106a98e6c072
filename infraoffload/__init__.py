"""Node agent building blocks: interface pool, watchers, NAT for Services and Felix policy relay."""

__version__ = "0.1.0"