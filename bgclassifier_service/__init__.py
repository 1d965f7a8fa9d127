"""
Background-removal classifier microservice package.

Exposes reusable primitives for loading the model, preprocessing images,
running inference, deciding on background removal, and serving the FastAPI
application.
"""
