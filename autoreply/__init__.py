"""
Ticket Auto-Reply Pipeline.

This package decides, for every incoming customer message on a support
ticket, whether to escalate to a human, answer with a keyword-matched
reply, or generate a context-aware reply with an LLM, and delivers the
reply from a background job lane.
"""

__version__ = "1.0.0"
__author__ = "Support Automation Team"
