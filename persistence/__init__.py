"""
Syndatagen persistence layer.

Backend routing between MongoDB and Firestore, the Firestore access layer,
and the MongoDB -> Firestore migration pipeline.
"""

__version__ = "1.0.0"
