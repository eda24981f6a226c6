"""Change reconstruction: snapshot store, field-level diffs, delta queries."""
