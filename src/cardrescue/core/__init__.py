"""Recovery pipeline stages: device, unmount, imaging, inspection, carving"""
