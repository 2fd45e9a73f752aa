"""Live access-log monitoring and the cooperative busy/pause flags it reads."""
