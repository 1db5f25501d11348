"""Real-time audio relay over WebSocket.

``channel`` holds the reconnecting client, ``protocol`` the JSON control
messages both ends speak, and ``sink`` a reference receiving server.
"""
