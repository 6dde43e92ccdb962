"""
Output storage for emitted build files.
"""
