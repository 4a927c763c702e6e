"""Auth Gateway: local and federated login with proxy-consistent sessions."""
