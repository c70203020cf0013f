# Services package for Prophet
