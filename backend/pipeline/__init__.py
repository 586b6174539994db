# pipeline/__init__.py
# Event transport for storefront domain events (RabbitMQ or in-memory).
