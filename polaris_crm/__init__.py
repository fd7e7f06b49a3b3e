"""Polaris CRM: members, segments and a WhatsApp webhook with AI-assisted replies."""
