"""ICMPP laboratory directory: public pages, admin panel and frame height sync."""

__version__ = "1.0.0"
