"""AWS Lambda entry points: API Gateway routes and the asynchronous processor."""
