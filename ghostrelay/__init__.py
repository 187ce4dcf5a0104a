"""
Relay server for Ghost Network: identity directory, handshake store and
encrypted message mailbox.
"""
