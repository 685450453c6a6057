"""Room session engine: rotation, room lifecycle, ledger and host controllers.

Everything here talks to the shared state store only. HTTP routes and socket
handlers import from this package and keep transport concerns out of it.
"""
