from .challenge_text import generate_challenge_text

__all__ = ["generate_challenge_text"]
