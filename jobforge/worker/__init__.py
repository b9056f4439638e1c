"""
Worker module.
Contains the queue scheduling core, the worker pool and the built-in jobs.
"""
