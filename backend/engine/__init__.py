"""
Map command execution.

`MapService` applies parsed directives to a `MapSurface`; `InMemoryMapSurface` is the
server-side surface over a `LayerStore`, and `MapSession` wires it to the performance
services for the HTTP app.
"""
