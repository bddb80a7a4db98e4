"""
Resumable point-to-point file transfer.

A client pushes or pulls one named file to or from a server and can
resume an interrupted transfer from the last byte the receiver holds.
"""

__version__ = '0.1.0'
