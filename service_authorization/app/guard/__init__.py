"""
Resource guard package.

Instance-level access control layered on top of the permission manager:
role bypass lists, ownership fields, conditioned custom permissions and
parent-resource inheritance, plus translation of the same rules into a
data-layer query predicate.
"""
