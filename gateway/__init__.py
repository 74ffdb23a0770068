"""Path-prefix routed reverse-proxy gateway."""
