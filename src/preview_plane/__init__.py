"""Working-branch acquisition and preview sandbox provisioning."""
