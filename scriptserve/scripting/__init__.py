"""Server-side scripting: the shared Lua runtime, the host bindings and the ScriptUnit."""
