"""Realtime chat: sessions, rooms, direct messages, typing and presence.

Components:
    - gateway: connect-time token authentication
    - manager: session registry and room/principal fan-out
    - presence: who is online
    - broadcast: send operations and their fan-out rules
    - history: paginated replay
    - store: DuckDB message persistence
    - events: inbound event table for the WebSocket loop
"""
