"""
Permissions package.

Defines the permission model and the decision algorithm. Modules of
interest:
- models: Roles, permissions, conditions, users and check results.
- catalog: Default role to permission mapping.
- conditions: Condition evaluation with dynamic value substitution.
- manager: Role plus dynamic-grant decision algorithm.
- requirements: Declarative route requirements evaluated by one guard.
"""
