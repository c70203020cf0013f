# Routers package for Prophet
