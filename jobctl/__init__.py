"""jobctl - operator CLI for the job processing core"""

__version__ = "1.0.0"
