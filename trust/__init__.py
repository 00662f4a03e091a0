"""Remote identity and presence trust pipeline for guard check-ins."""
