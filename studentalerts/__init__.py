"""
Student alert detection pipeline.

Turns time-stamped emotional, sensory and environmental observations for one
student into ranked, deduplicated alert events.
"""

__version__ = "0.1.0"
