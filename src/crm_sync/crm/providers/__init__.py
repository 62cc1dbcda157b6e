"""Provider packages: one per supported CRM, each with auth, mapping, webhooks and client."""
