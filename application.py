"""
Elastic Beanstalk Entry Point
"""
import sys
import os

# Elastic Beanstalk runs this file from the bundle root; make `backend` importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from backend.app import app as application

# For local testing
if __name__ == "__main__":
    application.run(debug=True)
