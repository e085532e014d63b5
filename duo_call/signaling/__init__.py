"""Websocket signaling channel to the call relay."""
