"""Campaign send queue for the MailGenius email-marketing platform."""

__version__ = "0.1.0"
