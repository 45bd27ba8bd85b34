"""Token counting via tiktoken.

Used when a provider response carries no usage block. cl100k_base is
close enough for cost estimates across providers.
"""

import tiktoken


class TokenCounter:
    """Count tokens using tiktoken encoding."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self._encoder = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        """Return the number of tokens in text."""
        if not text:
            return 0
        return len(self._encoder.encode(text))
