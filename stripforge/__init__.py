"""Stripforge - comic strip generation orchestrator.

Drives a story plus character images through a pipeline of external
inference jobs (story segmentation, character cartoonification, panel
backgrounds) and composes the finished panels into a strip.
"""

__version__ = "0.1.0"
