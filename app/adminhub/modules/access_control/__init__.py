"""
Access-control decision core.

- Route map resolves (path, method) to the feature that guards it
- Roles grant create/read/update/delete per feature (OR across roles)
- Policies add attribute checks on top of a role grant (AND across policies)
- Every decision is written to the access log, allow or deny
"""
