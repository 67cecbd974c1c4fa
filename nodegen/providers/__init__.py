"""Provider adapters for Kie.ai, fal.ai and Replicate"""
