"""lanlauncher — LAN game-launcher client core.

Discovers a game server on the local network, keeps a session channel to it
and reconciles what is actually being played against what the server has
recorded.
"""

__version__ = "1.4.0"
