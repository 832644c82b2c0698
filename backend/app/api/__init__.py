# Portal gate API routers
