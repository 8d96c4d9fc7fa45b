"""
Python renditions of the two browser agents: the student-side monitor and
the instructor-side viewer. Both talk to the v1 HTTP API only.
"""
