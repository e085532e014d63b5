"""duo-call: two-party call negotiation over a websocket relay."""
