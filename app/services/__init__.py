"""Request services: lifecycle, resolver, seasons, availability, notifications."""
