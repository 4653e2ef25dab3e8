"""Domain packages for the chat core."""
