"""External inference provider: submissions, polling and webhook parsing."""
