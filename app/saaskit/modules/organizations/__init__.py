"""
Organizations (tenants): membership roles owner/admin/member and email invitations.
"""
