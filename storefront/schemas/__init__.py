# Domain models for the checkout core
