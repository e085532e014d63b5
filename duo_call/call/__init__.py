"""Call negotiation: session model, coordinator, track controller, stats."""
