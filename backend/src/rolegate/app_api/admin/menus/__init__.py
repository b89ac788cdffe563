"""Admin routes for menus and menu permissions."""
