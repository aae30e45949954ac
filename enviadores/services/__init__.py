# Service clients for the aggregator and the backend
