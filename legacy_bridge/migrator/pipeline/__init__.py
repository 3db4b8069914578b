"""
Batch pipeline building blocks: reader, transform, identity, writer and references.
"""
