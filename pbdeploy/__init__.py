"""pbdeploy - provision, harden and deploy PocketBase apps over SSH"""

__version__ = "1.0.0"
