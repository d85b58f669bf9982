"""
URL configuration for the CRM API.

Paths keep the flat /api/... layout existing clients call, including the
singular callback/ aliases.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('login', views.login, name='login'),

    # Notes
    path('notes', views.list_notes, name='list_notes'),
    path('notes/add', views.add_note, name='add_note'),
    path('notes/update', views.update_note, name='update_note'),
    path('notes/delete', views.delete_note, name='delete_note'),

    # Call results
    path('save-result', views.save_result, name='save_result'),
    path('call-logs', views.call_logs, name='call_logs'),

    # Callbacks
    path('callbacks', views.list_callbacks, name='list_callbacks'),
    path('callbacks/add', views.add_callback, name='add_callback'),
    path('callbacks/update', views.update_callback, name='update_callback'),
    path('callbacks/delete', views.delete_callback, name='delete_callback'),
    path('callbacks/transfer-tech', views.transfer_callback_to_tech, name='transfer_callback_to_tech'),
    path('callbacks/transfer-closer', views.transfer_callback_to_closer, name='transfer_callback_to_closer'),
    path('callback', views.list_callbacks),
    path('callback/add', views.add_callback),
    path('callback/update', views.update_callback),
    path('callback/delete', views.delete_callback),
    path('callback/transfer-tech', views.transfer_callback_to_tech),
    path('callback/transfer-closer', views.transfer_callback_to_closer),

    # Orders
    path('orders', views.list_orders, name='list_orders'),
    path('my-clients', views.my_clients, name='my_clients'),
    path('orders/action', views.order_action, name='order_action'),
    path('orders/delete-self', views.delete_own_order, name='delete_own_order'),
    path('orders/assign', views.assign_order, name='assign_order'),
    path('orders/create-direct', views.create_direct_order, name='create_direct_order'),
    path('orders/to-tech', views.order_to_tech, name='order_to_tech'),
    path('orders/comment', views.comment_order, name='comment_order'),
    path('orders/final', views.final_order, name='final_order'),

    # Kupat
    path('kupat/list', views.list_kupat, name='list_kupat'),
    path('kupat/action', views.kupat_action, name='kupat_action'),
    path('kupat/assign-closer', views.kupat_assign_closer, name='kupat_assign_closer'),
    path('kupat/comment', views.kupat_comment, name='kupat_comment'),
    path('kupat/final', views.kupat_final, name='kupat_final'),

    # Admin
    path('delete-item', views.delete_item, name='delete_item'),
    path('users', views.list_users, name='list_users'),
    path('users/add', views.add_user, name='add_user'),
    path('users/delete', views.delete_user, name='delete_user'),
    path('admin/set-balance', views.set_balance, name='set_balance'),

    # Statistics
    path('me-stats', views.me_stats, name='me_stats'),
    path('stats', views.global_stats, name='global_stats'),
    path('stats/event', views.stats_event, name='stats_event'),
    path('admin/stats', views.admin_day_stats, name='admin_day_stats'),

    # Downloads
    path('admin/stats/download', views.download_day_stats, name='download_day_stats'),
    path('export/kupat', views.download_kupat_export, name='download_kupat_export'),
    path('export/auto-ndz', views.download_auto_ndz_export, name='download_auto_ndz_export'),
]
