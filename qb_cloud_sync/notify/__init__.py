from .mailer import Mailer

__all__ = ["Mailer"]
