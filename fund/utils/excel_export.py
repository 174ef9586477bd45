"""
Excel/CSV Export Utilities using Pandas
========================================

Spreadsheet exports for fund reports. Every function takes the output of a
fund.reports function and returns the file content as bytes, leaving the
transport (download response, email attachment, file) to the caller.
"""

import pandas as pd
from io import BytesIO, StringIO
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter


EXCEL_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

HEADER_FILL = PatternFill(start_color='0F766E', end_color='0F766E', fill_type='solid')
HEADER_FONT = Font(bold=True, color='FFFFFF', size=11)
TOTALS_FILL = PatternFill(start_color='CCFBF1', end_color='CCFBF1', fill_type='solid')
TOTALS_FONT = Font(bold=True, size=11)
TITLE_FONT = Font(bold=True, size=16, color='0F766E')


def _style_sheet(worksheet, df, title, subtitle='', money_columns=(), has_totals=False):
    """Header colours, currency formats, column widths and a title block"""
    for col_num in range(1, len(df.columns) + 1):
        cell = worksheet.cell(row=1, column=col_num)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal='center', vertical='center')

    last_row = len(df) + 1
    if has_totals and len(df):
        for col_num in range(1, len(df.columns) + 1):
            cell = worksheet.cell(row=last_row, column=col_num)
            cell.fill = TOTALS_FILL
            cell.font = TOTALS_FONT

    for col_num, column in enumerate(df.columns, 1):
        if column in money_columns:
            for row in range(2, last_row + 1):
                worksheet.cell(row=row, column=col_num).number_format = '#,##0.00'
        width = max([len(str(column))] + [len(str(value)) for value in df[column]]) + 4
        worksheet.column_dimensions[get_column_letter(col_num)].width = min(width, 50)

    # Report header above the table
    worksheet.insert_rows(1, 2)
    last_col = get_column_letter(max(len(df.columns), 1))
    worksheet.merge_cells(f'A1:{last_col}1')
    worksheet.merge_cells(f'A2:{last_col}2')

    title_cell = worksheet['A1']
    title_cell.value = title
    title_cell.font = TITLE_FONT
    title_cell.alignment = Alignment(horizontal='center')

    subtitle_cell = worksheet['A2']
    subtitle_cell.value = subtitle
    subtitle_cell.alignment = Alignment(horizontal='center')


def _write_workbook(sheets):
    """
    Write (sheet_name, DataFrame, style kwargs) tuples to .xlsx bytes
    """
    output = BytesIO()
    writer = pd.ExcelWriter(output, engine='openpyxl')

    for sheet_name, df, style in sheets:
        df.to_excel(writer, sheet_name=sheet_name, index=False)
        _style_sheet(writer.sheets[sheet_name], df, **style)

    writer.close()
    output.seek(0)
    return output.read()


def _with_totals(df, label_column, total_columns):
    """Append a TOTAL row summing the given columns"""
    totals = {column: '' for column in df.columns}
    totals[label_column] = 'TOTAL'
    for column in total_columns:
        totals[column] = float(df[column].sum()) if len(df) else 0.0
    return pd.concat([df, pd.DataFrame([totals])], ignore_index=True)


def export_deposit_history_excel(history, member_name=None):
    """
    Export deposit_history() rows

    Returns:
        bytes: .xlsx content
    """
    deposit_data = []
    for row in history:
        deposit_data.append({
            'Member': row['member_name'],
            'Member Month': row['member_month'],
            'Deposit Date': row['deposit_date'].isoformat(),
            'Amount (₹)': float(row['amount']),
            'Cumulative Total (₹)': float(row['cumulative_total']),
            'Notes': row['notes'],
        })

    columns = ['Member', 'Member Month', 'Deposit Date', 'Amount (₹)', 'Cumulative Total (₹)', 'Notes']
    df = pd.DataFrame(deposit_data, columns=columns)
    df = _with_totals(df, 'Member', ['Amount (₹)'])

    return _write_workbook([
        ('Deposits', df, {
            'title': 'DEPOSIT HISTORY',
            'subtitle': member_name or 'All members',
            'money_columns': ('Amount (₹)', 'Cumulative Total (₹)'),
            'has_totals': True,
        }),
    ])


def export_distribution_excel(member_summary, monthly_summary):
    """
    Export member_interest_summary() and monthly_interest_summary()

    Returns:
        bytes: .xlsx content with a Members and a Monthly sheet
    """
    member_columns = ['Member', 'Distributions', 'Total Interest (₹)']
    members_df = pd.DataFrame(
        [
            {
                'Member': row['member_name'],
                'Distributions': row['entries'],
                'Total Interest (₹)': float(row['total_interest']),
            }
            for row in member_summary
        ],
        columns=member_columns,
    )
    members_df = _with_totals(members_df, 'Member', ['Total Interest (₹)'])

    monthly_columns = ['Earned Month', 'Source', 'Entries', 'Total (₹)']
    monthly_df = pd.DataFrame(
        [
            {
                'Earned Month': row['earned_month'],
                'Source': row['source'].replace('_', ' ').title(),
                'Entries': row['entries'],
                'Total (₹)': float(row['total']),
            }
            for row in monthly_summary
        ],
        columns=monthly_columns,
    )
    monthly_df = _with_totals(monthly_df, 'Earned Month', ['Total (₹)'])

    return _write_workbook([
        ('Members', members_df, {
            'title': 'INTEREST DISTRIBUTION BY MEMBER',
            'money_columns': ('Total Interest (₹)',),
            'has_totals': True,
        }),
        ('Monthly', monthly_df, {
            'title': 'INTEREST BY MONTH',
            'money_columns': ('Total (₹)',),
            'has_totals': True,
        }),
    ])


def export_ledger_statement_excel(statement):
    """
    Export ledger_statement()

    Returns:
        bytes: .xlsx content
    """
    columns = ['Date', 'Type', 'Amount (₹)', 'Balance After (₹)', 'Description']
    df = pd.DataFrame(
        [
            {
                'Date': row['created_at'].strftime('%Y-%m-%d %H:%M'),
                'Type': row['transaction_type'].replace('_', ' ').title(),
                'Amount (₹)': float(row['amount']),
                'Balance After (₹)': float(row['balance_after']),
                'Description': row['description'],
            }
            for row in statement['transactions']
        ],
        columns=columns,
    )

    return _write_workbook([
        ('Ledger', df, {
            'title': 'FUND RESERVE STATEMENT',
            'subtitle': (
                f"Balance: ₹{statement['total_balance']:,.2f} | "
                f"Last interest month: {statement['last_interest_month']}"
            ),
            'money_columns': ('Amount (₹)', 'Balance After (₹)'),
        }),
    ])


def export_to_csv(data, columns):
    """
    Generic CSV export

    Args:
        data: List of dicts
        columns: Column names to include, in order

    Returns:
        str: CSV text
    """
    df = pd.DataFrame(data, columns=columns)
    output = StringIO()
    df.to_csv(output, index=False)
    return output.getvalue()
