"""HTTP routers: scheduler trigger and tenant automation API."""
