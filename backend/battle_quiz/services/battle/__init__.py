"""Battle quiz domain services: wallet, matchmaking, match lifecycle, sweeps.

This package contains the core battle logic that HTTP routes and socket
handlers import, keeping transport concerns separated from matchmaking
and match progression.
"""
