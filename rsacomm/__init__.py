"""rsacomm: multi-user messaging with hybrid RSA/AES payload encryption."""

__version__ = "0.1.0"
