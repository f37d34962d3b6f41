"""In-sandbox HTTP control plane for the agent runtime."""
