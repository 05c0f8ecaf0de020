"""
All the structures coming from/to the Kubernetes API and the database.

All the functions here are purely data-manipulative and computational.
No external calls or any i/o activities are done here.
"""
