"""Domain layer - models, enums, errors and events"""
