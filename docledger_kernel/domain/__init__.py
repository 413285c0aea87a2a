"""Pure domain values: clock, document references, input DTOs."""
