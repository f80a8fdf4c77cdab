"""taskcore: task records with attachments, overdue notifications and a console front end."""

__version__ = "0.1.0"
